"""Image normalization ahead of the staging transform.

The image-edit endpoint wants a square PNG, so uploads are center-cropped
to fill the square and re-encoded before they are sent.
"""

import io

from PIL import Image, ImageOps, UnidentifiedImageError


class InvalidImage(ValueError):
    """The uploaded bytes could not be decoded as an image."""


def normalize_image(data: bytes, dimension: int = 1024) -> bytes:
    """Return ``data`` as a ``dimension`` x ``dimension`` PNG (cover fit, centered)."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            img = ImageOps.exif_transpose(img)
            mode = "RGBA" if img.mode in ("RGBA", "LA", "P") else "RGB"
            fitted = ImageOps.fit(
                img.convert(mode),
                (dimension, dimension),
                method=Image.LANCZOS,
                centering=(0.5, 0.5),
            )
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidImage(f"cannot decode image: {exc}") from exc

    out = io.BytesIO()
    fitted.save(out, format="PNG")
    return out.getvalue()


def build_edit_mask(dimension: int = 1024) -> bytes:
    """Full-frame opaque white RGBA mask."""
    mask = Image.new("RGBA", (dimension, dimension), (255, 255, 255, 255))
    out = io.BytesIO()
    mask.save(out, format="PNG")
    return out.getvalue()
