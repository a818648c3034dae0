import asyncio
import sys
from pathlib import Path

import pytest

from cottmv.gateway.ocr import MAX_OCR_TEXT_LENGTH, OCRContext, OCRError, OCRExtractor

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX tools")


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "scan.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\n")
    return path


def extractor(command: list[str], **kwargs) -> OCRExtractor:
    return OCRExtractor(OCRContext(command=command, **kwargs))


def test_command_template():
    context = OCRContext(command=["tesseract", "{input}", "stdout", "-l", "{lang}"], language="deu")
    assert context.build_command(Path("/vault/a.png")) == ["tesseract", "/vault/a.png", "stdout", "-l", "deu"]


@pytest.mark.parametrize("mime,expected", [("image/png", True), ("image/jpeg", True), ("video/mp4", False)])
def test_supports(mime, expected):
    assert OCRExtractor.supports(mime) is expected


@pytest.mark.asyncio
async def test_extracts_and_strips(image):
    text = await extractor(["printf", "  Hello\\nWorld  \\n\\n"]).extract_text(image)
    assert text == "Hello\nWorld"


@pytest.mark.asyncio
async def test_input_is_substituted(image):
    text = await extractor(["echo", "{input}"]).extract_text(image)
    assert text == str(image)


@pytest.mark.asyncio
async def test_long_text_is_truncated(image):
    text = await extractor(["sh", "-c", "head -c 20000 /dev/zero | tr '\\0' x"]).extract_text(image)
    assert len(text) == MAX_OCR_TEXT_LENGTH


@pytest.mark.asyncio
async def test_failure_is_remembered(image):
    ocr = extractor(["sh", "-c", "echo 'Error opening data file' >&2; exit 1"])

    with pytest.raises(OCRError, match="Error opening data file"):
        await ocr.extract_text(image)
    assert ocr.has_failed(image)

    with pytest.raises(OCRError, match="failed on it before"):
        await ocr.extract_text(image)

    ocr.forget_failure(image)
    assert not ocr.has_failed(image)


@pytest.mark.asyncio
async def test_missing_tool(image):
    with pytest.raises(OCRError, match="Failed to start"):
        await extractor(["definitely-not-a-real-ocr-binary"]).extract_text(image)


@pytest.mark.asyncio
async def test_timeout_kills_tool(image):
    ocr = extractor(["sleep", "30"], timeout=0.2)

    started = asyncio.get_running_loop().time()
    with pytest.raises(OCRError, match="timed out"):
        await ocr.extract_text(image)

    assert asyncio.get_running_loop().time() - started < 5
    assert ocr.has_failed(image)


@pytest.mark.asyncio
async def test_concurrency_is_bounded(tmp_path):
    log = tmp_path / "log"
    script = f"echo start >> {log}; sleep 0.2; echo end >> {log}"
    ocr = OCRExtractor(OCRContext(command=["sh", "-c", script]), max_concurrent=1)
    images = []
    for i in range(3):
        path = tmp_path / f"page-{i}.png"
        path.write_bytes(b"png")
        images.append(path)

    await asyncio.gather(*(ocr.extract_text(p) for p in images))

    assert log.read_text().split() == ["start", "end"] * 3
