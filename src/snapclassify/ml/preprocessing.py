"""Image preprocessing pipeline.

Decodes uploaded image bytes with Pillow, fixes EXIF orientation, converts
to RGB, enforces size limits, and produces the normalized NCHW tensor that
ImageNet-style classifiers expect.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from snapclassify.errors import ImageDecodeFailure

if TYPE_CHECKING:
    from numpy.typing import NDArray

IMAGENET_MEAN: tuple[float, float, float] = (0.485, 0.456, 0.406)
IMAGENET_STD: tuple[float, float, float] = (0.229, 0.224, 0.225)

# Fraction of the shorter side kept by the center crop.
CROP_RATIO: float = 0.875


class ImagePreprocessor:
    """Turns encoded images into classifier input tensors."""

    def __init__(
        self,
        input_size: int = 224,
        mean: tuple[float, float, float] = IMAGENET_MEAN,
        std: tuple[float, float, float] = IMAGENET_STD,
        max_image_pixels: int = 16_777_216,
        max_file_size: int = 52_428_800,
    ) -> None:
        self._input_size = input_size
        self._mean = np.asarray(mean, dtype=np.float32)
        self._std = np.asarray(std, dtype=np.float32)
        self._max_image_pixels = max_image_pixels
        self._max_file_size = max_file_size

    def decode_image(self, image_bytes: bytes) -> NDArray[np.uint8]:
        """Decode raw image bytes into an RGB uint8 numpy array.

        Args:
            image_bytes: Raw file bytes (any format Pillow can read).

        Returns:
            HxWx3 RGB uint8 numpy array.

        Raises:
            ImageDecodeFailure: If the image cannot be decoded or exceeds size limits.
        """
        if not image_bytes:
            raise ImageDecodeFailure
        if len(image_bytes) > self._max_file_size:
            raise ImageDecodeFailure

        try:
            with Image.open(io.BytesIO(image_bytes)) as img:
                if img.width * img.height > self._max_image_pixels:
                    raise ImageDecodeFailure
                img = ImageOps.exif_transpose(img)
                return np.asarray(img.convert("RGB"), dtype=np.uint8)
        except ImageDecodeFailure:
            raise
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as exc:
            raise ImageDecodeFailure from exc

    def preprocess_for_classification(self, image: NDArray[np.uint8]) -> NDArray[np.float32]:
        """Center-crop, resize and normalize an RGB image.

        The crop keeps CROP_RATIO of the shorter side as a square, so the
        resize target is always SxS whatever the aspect ratio.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            1x3xSxS float32 tensor, S being the model input size.
        """
        size = self._input_size
        pil = Image.fromarray(image)
        side = max(1, round(min(pil.width, pil.height) * CROP_RATIO))
        left = (pil.width - side) // 2
        top = (pil.height - side) // 2
        cropped = pil.crop((left, top, left + side, top + side))
        resized = cropped.resize((size, size), Image.Resampling.BILINEAR)

        arr = np.asarray(resized, dtype=np.float32) / 255.0
        arr = (arr - self._mean) / self._std
        return np.ascontiguousarray(arr.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)

    def prepare(self, image_bytes: bytes) -> NDArray[np.float32]:
        """Decode and preprocess in one step."""
        return self.preprocess_for_classification(self.decode_image(image_bytes))
