import base64
import io
import random

from conftest import noise_image_bytes, solid_image_bytes
from PIL import Image

from gemini_chat.services.transcoder import (
    ImageTranscoder,
    encode_base64,
    estimate_base64_bytes,
    normalize_mime_type,
)


def test_estimate_matches_decoded_length():
    for raw in (b"", b"a", b"ab", b"abc", b"abcd" * 50):
        encoded = base64.b64encode(raw).decode()
        assert estimate_base64_bytes(encoded) == len(raw)


def test_normalize_mime_type():
    assert normalize_mime_type("image/jpg") == "image/jpeg"
    assert normalize_mime_type("image/webp") == "image/webp"
    assert normalize_mime_type("application/pdf") == "image/jpeg"
    assert normalize_mime_type(None) == "image/jpeg"


def test_small_image_is_read_directly():
    content = solid_image_bytes()
    result = ImageTranscoder().transcode(content, "image/png")

    assert result.data == encode_base64(content)
    assert result.mime_type == "image/png"


def test_large_png_is_recompressed_under_cap():
    content = noise_image_bytes(1000, 1000)  # ~3 MB of noise
    cap = 2_000_000
    assert len(content) > cap

    result = ImageTranscoder(max_inline_bytes=cap).transcode(content, "image/png")

    assert result.estimated_bytes <= cap
    assert result.mime_type in ("image/png", "image/jpeg")
    assert result.width <= 1000 and result.height <= 1000


def test_unreachable_cap_returns_smallest_candidate():
    content = noise_image_bytes(600, 600)
    transcoder = ImageTranscoder(max_inline_bytes=1_000)

    result = transcoder.transcode(content, "image/png")

    assert result.estimated_bytes > 1_000
    assert result.estimated_bytes < len(content)
    assert result.width == 512
    assert result.mime_type == "image/jpeg"


def test_small_image_is_never_upscaled():
    content = noise_image_bytes(300, 200)
    result = ImageTranscoder(max_inline_bytes=1_000).transcode(content, "image/png")

    assert (result.width, result.height) == (300, 200)


def test_undecodable_bytes_fall_back_to_direct_read():
    content = b"not an image" * 10_000
    result = ImageTranscoder(max_inline_bytes=1_000).transcode(content, "image/png")

    assert result.data == encode_base64(content)
    assert result.mime_type == "image/png"


def test_transparent_png_flattens_to_jpeg():
    rng = random.Random(3)
    image = Image.frombytes("RGBA", (400, 400), rng.randbytes(400 * 400 * 4))
    with io.BytesIO() as buffer:
        image.save(buffer, format="PNG")
        content = buffer.getvalue()

    result = ImageTranscoder(max_inline_bytes=500).transcode(content, "image/png")

    with Image.open(io.BytesIO(base64.b64decode(result.data))) as decoded:
        assert result.mime_type == "image/jpeg"
        assert decoded.mode == "RGB"
