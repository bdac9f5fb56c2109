"""Prompt text for avatar and try-on generation."""

import re
from typing import List, Optional, Sequence, Tuple

from closet.jobs.models import SizePreference

# (pose_id, label) in request order
POSES: List[Tuple[str, str]] = [
    ("front-neutral", "Neutral front-facing standing"),
    ("front-open", "Front-facing open stance"),
    ("three-quarter", "Three-quarter angle"),
    ("side-profile", "Side profile"),
]

IMAGE_SPECIFICATIONS = (
    "IMAGE SPECIFICATIONS:\n"
    "- Generate images in portrait orientation with dimensions 768 pixels wide by 1152 pixels tall\n"
    "- Use JPEG format for the output images\n"
    "- Ensure high quality and clarity at these specific dimensions"
)

_AVATAR_STYLE = (
    "Use the provided photos to capture identity, face, hairstyle, body type, and skin tone. "
    "Dress in plain white/grey T-shirt, black/grey/neutral shorts (not long pants), "
    "neutral shoes if visible. The shorts should be mid-thigh length for optimal outfit layering."
)

_SIZE_INSTRUCTIONS = {
    SizePreference.RETAIN: (
        "Maintain the original proportions and sizing of the clothing items as they appear in the "
        "reference images. Do not resize the clothing to fit the person - keep the garments at "
        "their natural dimensions and proportions."
    ),
    SizePreference.FIT: (
        "Resize and adjust the clothing items to properly fit the person's body size, proportions, "
        "and measurements. Ensure the garments fit naturally and appropriately on the person's frame."
    ),
}

_REPLACEMENT_RULES = """CRITICAL CLOTHING REPLACEMENT INSTRUCTIONS:
- Completely remove and replace any existing clothing that conflicts with the new clothing items
- If applying a skirt, dress, or shorts: completely remove any existing pants/shorts/bottoms from the base image
- If applying pants or jeans: completely remove any existing shorts/bottoms from the base image
- If applying a top/shirt/blouse: completely remove any existing shirts/tops from the base image
- If applying a dress: remove both existing tops and bottoms from the base image
- If applying outerwear (jacket, coat, blazer): layer it properly over existing clothing without removing the base garments
- Ensure no parts of conflicting garments are visible underneath or around the edges of new clothing"""


def avatar_batch_prompt(poses: Sequence[Tuple[str, str]] = POSES) -> str:
    listing = ", ".join(f"{i}) {label}" for i, (_, label) in enumerate(poses, start=1))
    return (
        f"Generate {len(poses)} realistic avatar images of this person in neutral clothing on a "
        f"white background. {_AVATAR_STYLE} Output {len(poses)} separate images: {listing}. "
        f"Each should be high-resolution and realistic.\n\n{IMAGE_SPECIFICATIONS}"
    )


def single_pose_prompt(pose_index: int) -> str:
    _, label = POSES[pose_index]
    return (
        "Generate 1 realistic avatar image of this person in neutral clothing on a white "
        f"background. {_AVATAR_STYLE} Pose: {label}. The image should be high-resolution "
        f"and realistic.\n\n{IMAGE_SPECIFICATIONS}"
    )


def _join_items(items: Sequence[str]) -> str:
    if len(items) == 1:
        return items[0]
    if len(items) == 2:
        return f"{items[0]} and {items[1]}"
    return f"{', '.join(items[:-1])}, and {items[-1]}"


def single_item_tryon_prompt(item_description: str = "clothing item") -> str:
    return (
        "Create a new image by combining the elements from the provided images. Take the person "
        "(body, face, hairstyle, skin tone, and pose) from image 1 and place it with the "
        f"{item_description} from image 2. The final image should be a realistic photograph "
        "showing the person wearing the new clothing item with proper fit, natural draping, and "
        "realistic shadows. Maintain the person's original body proportions, facial features, "
        f"and skin tone.\n\n{_REPLACEMENT_RULES}\n\n{IMAGE_SPECIFICATIONS}\n\n"
        "Use a clean, neutral background. Generate a high-quality, photorealistic result that "
        "looks like a professional fashion photograph."
    )


def multi_item_tryon_prompt(
    item_count: int,
    size_preference: SizePreference = SizePreference.FIT,
    item_descriptions: Sequence[str] = (),
) -> str:
    described = list(item_descriptions) or [f"clothing item {i}" for i in range(1, item_count + 1)]
    return (
        "Remove existing clothing from the base image and dress the person in the provided "
        "clothing items. Layer the clothes naturally and ensure realistic fit, drape, and "
        f"alignment. The first image is the person, followed by {item_count} clothing items "
        f"({_join_items(described)}) to be worn together. Preserve the person's face, hairstyle, "
        "body type, and skin tone. Use a plain white background. Generate a high-resolution, "
        f"realistic photo result.\n\nSIZE FITTING INSTRUCTION:\n"
        f"{_SIZE_INSTRUCTIONS[SizePreference(size_preference)]}\n\n{IMAGE_SPECIFICATIONS}"
    )


_POSE_NUMBER = re.compile(r"^\s*([1-9])\s*[).:]|\b(?:pose|image|avatar)\s*#?\s*([1-9])\b", re.IGNORECASE)


def match_pose(caption: str, poses: Sequence[Tuple[str, str]] = POSES) -> Optional[int]:
    """Pose index a caption refers to, by label, pose id or number. None if unclear."""
    text = caption.strip().lower()
    if not text:
        return None
    for index, (pose_id, label) in enumerate(poses):
        if label.lower() in text or pose_id in text:
            return index
    match = _POSE_NUMBER.search(text)
    if match:
        index = int(match.group(1) or match.group(2)) - 1
        if index < len(poses):
            return index
    return None


def assign_poses(captions: Sequence[str], poses: Sequence[Tuple[str, str]] = POSES) -> List[Optional[int]]:
    """Slot for each returned image, in response order.

    A caption naming a free pose claims it; other images take the lowest free
    pose. Images beyond the pose set get None.
    """
    taken = set()
    slots: List[Optional[int]] = [None] * len(captions)
    for i, caption in enumerate(captions):
        index = match_pose(caption, poses)
        if index is not None and index not in taken:
            slots[i] = index
            taken.add(index)
    for i, slot in enumerate(slots):
        if slot is not None:
            continue
        free = next((p for p in range(len(poses)) if p not in taken), None)
        if free is None:
            break
        slots[i] = free
        taken.add(free)
    return slots
