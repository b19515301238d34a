import io
import os

import pytest
from PIL import Image

from image_compressor import (
    MAX_UPLOAD_SIZE,
    calculate_dimensions,
    compress_image,
    compress_images,
    validate_image_file,
)
from supabase_client import ServiceError


def noise_png(size=(300, 300), mode='RGB'):
    channels = len(mode)
    img = Image.frombytes(mode, size, os.urandom(size[0] * size[1] * channels))
    buffer = io.BytesIO()
    img.save(buffer, format='PNG')
    return buffer.getvalue()


def test_small_file_is_returned_unchanged():
    data = noise_png((10, 10))
    result = compress_image(data, 'tiny.png', 'image/png')
    assert result.data == data
    assert result.filename == 'tiny.png'
    assert result.content_type == 'image/png'
    assert result.original_size == result.compressed_size == len(data)


def test_large_file_becomes_smaller_jpeg():
    data = noise_png()
    result = compress_image(data, 'photo.png', 'image/png', max_file_size=50 * 1024)

    assert result.filename == 'photo.jpg'
    assert result.content_type == 'image/jpeg'
    assert result.compressed_size < result.original_size
    assert Image.open(io.BytesIO(result.data)).format == 'JPEG'


def test_transparent_pixels_are_flattened_onto_white():
    img = Image.frombytes('RGBA', (200, 200), os.urandom(200 * 200 * 4))
    img.putalpha(0)
    buffer = io.BytesIO()
    img.save(buffer, format='PNG')

    result = compress_image(buffer.getvalue(), 'clear.png', 'image/png', max_file_size=1024)
    pixel = Image.open(io.BytesIO(result.data)).convert('RGB').getpixel((100, 100))
    assert all(channel >= 245 for channel in pixel)


def test_non_image_is_rejected():
    with pytest.raises(ServiceError) as excinfo:
        compress_image(b'hello', 'notes.txt', 'text/plain')
    assert excinfo.value.message == '이미지 파일만 업로드 가능합니다.'


def test_unreadable_image_fails():
    with pytest.raises(ServiceError) as excinfo:
        compress_image(b'\x00' * 2048, 'broken.jpg', 'image/jpeg', max_file_size=1024)
    assert excinfo.value.message == '이미지 압축 실패'


def test_dimensions_keep_aspect_ratio():
    assert calculate_dimensions(800, 600, 1920) == (800, 600)
    assert calculate_dimensions(3840, 2160, 1920) == (1920, 1080)
    assert calculate_dimensions(1000, 4000, 1920) == (480, 1920)


def test_compress_images_reports_progress():
    progress = []
    files = [(noise_png((8, 8)), f'{i}.png', 'image/png') for i in range(3)]
    results = compress_images(files, on_progress=lambda done, total: progress.append((done, total)))
    assert len(results) == 3
    assert progress == [(1, 3), (2, 3), (3, 3)]


def test_validate_image_file():
    assert validate_image_file('image/png', 1024) == (True, None)
    assert validate_image_file('image/bmp', 1024) == (False, 'JPG, PNG, WEBP, GIF 형식만 지원합니다.')
    assert validate_image_file('image/jpeg', MAX_UPLOAD_SIZE + 1) == (False, '파일 크기는 20MB 이하여야 합니다.')
