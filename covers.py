"""Default cover images for books created without one."""

import hashlib

DEFAULT_COVER = "https://images.unsplash.com/photo-1544947950-fa07a98d237f?w=400&h=600&fit=crop&crop=center"

COVER_IMAGES = [
    DEFAULT_COVER,
    "https://images.unsplash.com/photo-1481627834876-b7833e8f5570?w=400&h=600&fit=crop&crop=center",
    "https://images.unsplash.com/photo-1512820790803-83ca734da794?w=400&h=600&fit=crop&crop=center",
    "https://images.unsplash.com/photo-1541963463532-d68292c34b19?w=400&h=600&fit=crop&crop=center",
    "https://images.unsplash.com/photo-1507003211169-0a1dd7228f2d?w=400&h=600&fit=crop&crop=center",
    "https://images.unsplash.com/photo-1513475382585-d06e58bcb0e0?w=400&h=600&fit=crop&crop=center",
    "https://images.unsplash.com/photo-1589829085413-56de8ae18c73?w=400&h=600&fit=crop&crop=center",
    "https://images.unsplash.com/photo-1592496431122-2349e0fbc666?w=400&h=600&fit=crop&crop=center",
]


def cover_for_title(title):
    """Same title, same cover."""
    if not title:
        return DEFAULT_COVER
    digest = hashlib.md5(title.strip().lower().encode("utf-8")).hexdigest()
    return COVER_IMAGES[int(digest, 16) % len(COVER_IMAGES)]
