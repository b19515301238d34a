"""Shrinks uploaded photos before they go to Supabase storage."""

import io
import os
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from supabase_client import ServiceError

DEFAULT_MAX_FILE_SIZE = 500 * 1024  # 500KB
DEFAULT_QUALITY_STEPS = (80, 60, 40, 20)
DEFAULT_MAX_DIMENSION = 1920
FALLBACK_QUALITY = 60
SHRINK_FACTOR = 0.8
MIN_DIMENSION = 100

ALLOWED_TYPES = ('image/jpeg', 'image/png', 'image/webp', 'image/gif')
MAX_UPLOAD_SIZE = 20 * 1024 * 1024  # 20MB


@dataclass
class CompressedImage:
    data: bytes
    filename: str
    content_type: str
    original_size: int
    compressed_size: int


def calculate_dimensions(width, height, max_dimension):
    if width <= max_dimension and height <= max_dimension:
        return width, height
    ratio = min(max_dimension / width, max_dimension / height)
    return round(width * ratio), round(height * ratio)


def _flatten(img, size, background):
    canvas = Image.new('RGB', size, background)
    resized = img.resize(size, Image.LANCZOS)
    if resized.mode in ('RGBA', 'LA', 'P'):
        resized = resized.convert('RGBA')
        canvas.paste(resized, mask=resized.split()[-1])
    else:
        canvas.paste(resized.convert('RGB'))
    return canvas


def _encode(canvas, quality):
    buffer = io.BytesIO()
    canvas.save(buffer, format='JPEG', quality=quality)
    return buffer.getvalue()


def compress_image(data, filename, content_type, max_file_size=DEFAULT_MAX_FILE_SIZE,
                   max_dimension=DEFAULT_MAX_DIMENSION, quality_steps=DEFAULT_QUALITY_STEPS,
                   background='#FFFFFF'):
    original_size = len(data)

    if not (content_type or '').startswith('image/'):
        raise ServiceError('이미지 파일만 업로드 가능합니다.')

    if original_size <= max_file_size:
        return CompressedImage(data, filename, content_type, original_size, original_size)

    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ServiceError('이미지 압축 실패') from e

    width, height = calculate_dimensions(img.width, img.height, max_dimension)
    canvas = _flatten(img, (width, height), background)

    compressed = None
    for quality in quality_steps:
        compressed = _encode(canvas, quality)
        if len(compressed) <= max_file_size:
            break

    if compressed is None or len(compressed) > max_file_size:
        while width > MIN_DIMENSION and height > MIN_DIMENSION:
            width = round(width * SHRINK_FACTOR)
            height = round(height * SHRINK_FACTOR)
            canvas = _flatten(img, (width, height), background)
            compressed = _encode(canvas, FALLBACK_QUALITY)
            if len(compressed) <= max_file_size:
                break

    if compressed is None:
        raise ServiceError('이미지 압축 실패')

    name = os.path.splitext(filename)[0] + '.jpg'
    return CompressedImage(compressed, name, 'image/jpeg', original_size, len(compressed))


def compress_images(files, on_progress=None, **options):
    """files: iterable of (data, filename, content_type)."""
    files = list(files)
    results = []
    for index, (data, filename, content_type) in enumerate(files, start=1):
        results.append(compress_image(data, filename, content_type, **options))
        if on_progress:
            on_progress(index, len(files))
    return results


def validate_image_file(content_type, size):
    if content_type not in ALLOWED_TYPES:
        return False, 'JPG, PNG, WEBP, GIF 형식만 지원합니다.'
    if size > MAX_UPLOAD_SIZE:
        return False, '파일 크기는 20MB 이하여야 합니다.'
    return True, None
