from __future__ import annotations

from pathlib import Path

import pytest

from invoicebot import extraction_service
from invoicebot.config import Settings
from invoicebot.extraction_service import (
    CORRECTIVE_PROMPT,
    USER_EXTRACTION_PROMPT,
    DemoVisionClient,
    ExtractionError,
    InvoiceExtractor,
    build_vision_client,
    extract_document,
    sanitize_document_text,
)
from invoicebot.retry_utils import RetryPolicy

_VALID = (
    '{"invoiceNumber":"A-1","date":"2025-10-29","vendor":{"name":"ACME"},'
    '"totalAmount":150,"currency":"ARS"}'
)


class _FakeVisionClient:
    def __init__(self, outputs: list[str]) -> None:
        self._outputs = outputs
        self.calls: list[tuple[str, str]] = []
        self.texts: list[str] = []

    def extract_json(self, file_path: Path, model_name: str, prompt: str) -> str:
        self.calls.append((model_name, prompt))
        if not self._outputs:
            raise RuntimeError("No outputs configured")
        return self._outputs.pop(0)

    def extract_json_from_text(self, text: str, model_name: str, prompt: str) -> str:
        self.texts.append(text)
        return self.extract_json(Path("text"), model_name, prompt)


class _FlakyClient(_FakeVisionClient):
    def __init__(self, failures: int, code: str = "provider_unavailable") -> None:
        super().__init__(outputs=[_VALID])
        self._failures = failures
        self._code = code

    def extract_json(self, file_path: Path, model_name: str, prompt: str) -> str:
        if self._failures > 0:
            self._failures -= 1
            self.calls.append((model_name, prompt))
            raise ExtractionError("boom", code=self._code)
        return super().extract_json(file_path, model_name, prompt)


def _image(tmp_path: Path, name: str = "doc.jpg") -> Path:
    path = tmp_path / name
    path.write_bytes(b"\xff\xd8\xffimg")
    return path


def _no_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_seconds=0.0, max_delay_seconds=0.0)


def test_extract_document_success_first_try(tmp_path: Path) -> None:
    client = _FakeVisionClient(outputs=[_VALID])
    payload = extract_document(_image(tmp_path), client, "gpt-4o-mini")
    assert payload["invoiceNumber"] == "A-1"
    assert client.calls == [("gpt-4o-mini", USER_EXTRACTION_PROMPT)]


def test_extract_document_retries_once_on_invalid_json(tmp_path: Path) -> None:
    client = _FakeVisionClient(outputs=["not json", _VALID])
    payload = extract_document(_image(tmp_path), client, "gpt-4o-mini")
    assert payload["vendor"]["name"] == "ACME"
    assert [prompt for _, prompt in client.calls] == [USER_EXTRACTION_PROMPT, CORRECTIVE_PROMPT]


def test_extract_document_fails_after_corrective_retry(tmp_path: Path) -> None:
    client = _FakeVisionClient(outputs=["nope", "still nope"])
    with pytest.raises(ExtractionError, match="invalid JSON") as exc_info:
        extract_document(_image(tmp_path), client, "gpt-4o-mini")
    assert exc_info.value.code == "invalid_json"
    assert len(client.calls) == 2


def test_extract_document_rejects_non_object_json(tmp_path: Path) -> None:
    client = _FakeVisionClient(outputs=["[1, 2]", "[]"])
    with pytest.raises(ExtractionError) as exc_info:
        extract_document(_image(tmp_path), client, "gpt-4o-mini")
    assert exc_info.value.code == "invalid_json_shape"


def test_extract_document_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(ExtractionError, match="File not found") as exc_info:
        extract_document(tmp_path / "missing.jpg", _FakeVisionClient(outputs=[_VALID]), "gpt-4o-mini")
    assert exc_info.value.code == "file_not_found"


def test_extract_document_unsupported_image_type(tmp_path: Path) -> None:
    path = tmp_path / "scan.heic"
    path.write_bytes(b"\x00\x00\x00\x18ftypheic")
    with pytest.raises(ExtractionError) as exc_info:
        extract_document(path, _FakeVisionClient(outputs=[_VALID]), "gpt-4o-mini")
    assert exc_info.value.code == "unsupported_type"


def test_extract_document_retries_transient_provider_errors(tmp_path: Path) -> None:
    sleeps: list[float] = []
    client = _FlakyClient(failures=2)
    payload = extract_document(
        _image(tmp_path), client, "gpt-4o-mini", retry_policy=_no_retry(), sleep_fn=sleeps.append
    )
    assert payload["invoiceNumber"] == "A-1"
    assert len(sleeps) == 2


def test_extract_document_does_not_retry_permanent_errors(tmp_path: Path) -> None:
    sleeps: list[float] = []
    client = _FlakyClient(failures=1, code="provider_request_failed")
    with pytest.raises(ExtractionError) as exc_info:
        extract_document(_image(tmp_path), client, "gpt-4o-mini", retry_policy=_no_retry(), sleep_fn=sleeps.append)
    assert exc_info.value.code == "provider_request_failed"
    assert sleeps == []


def test_extract_document_wraps_unexpected_client_errors(tmp_path: Path) -> None:
    client = _FakeVisionClient(outputs=[])
    with pytest.raises(ExtractionError) as exc_info:
        extract_document(_image(tmp_path), client, "gpt-4o-mini", sleep_fn=lambda _: None)
    assert exc_info.value.code == "provider_request_failed"


def test_extract_document_reads_pdf_text(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "transfer.pdf"
    path.write_bytes(b"%PDF-1.4")
    monkeypatch.setattr(extraction_service, "extract_pdf_text", lambda _: "Destinatario: ACME")
    client = _FakeVisionClient(outputs=[_VALID])

    payload = extract_document(path, client, "gpt-4o-mini")
    assert payload["invoiceNumber"] == "A-1"
    assert client.texts == ["Destinatario: ACME"]


@pytest.mark.parametrize("name", ["scan.bmp", "scan.tif", "scan.TIFF"])
def test_extract_document_accepts_bitmap_and_tiff_images(tmp_path: Path, name: str) -> None:
    path = tmp_path / name
    path.write_bytes(b"BM....")
    client = _FakeVisionClient(outputs=[_VALID])
    assert extract_document(path, client, "gpt-4o-mini")["invoiceNumber"] == "A-1"


class _RecordingImageClient(_FakeVisionClient):
    def __init__(self, outputs: list[str]) -> None:
        super().__init__(outputs)
        self.images: list[tuple[Path, bytes]] = []

    def extract_json(self, file_path: Path, model_name: str, prompt: str) -> str:
        self.images.append((file_path, file_path.read_bytes()))
        return super().extract_json(file_path, model_name, prompt)


def _no_text_layer(_: Path) -> str:
    raise ExtractionError("no text", code="pdf_no_text")


def test_extract_document_renders_scanned_pdf_page(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "scan.pdf"
    path.write_bytes(b"%PDF-1.4")
    rendered: list[Path] = []

    def _render(source: Path, target: Path) -> Path:
        rendered.append(source)
        target.write_bytes(b"\x89PNG\r\n\x1a\n")
        return target

    monkeypatch.setattr(extraction_service, "extract_pdf_text", _no_text_layer)
    monkeypatch.setattr(extraction_service, "render_pdf_first_page", _render)
    client = _RecordingImageClient(outputs=["not json", _VALID])

    payload = extract_document(path, client, "gpt-4o-mini")
    assert payload["invoiceNumber"] == "A-1"
    assert rendered == [path]
    assert client.texts == []
    assert [prompt for _, prompt in client.calls] == [USER_EXTRACTION_PROMPT, CORRECTIVE_PROMPT]
    image_path, image_bytes = client.images[0]
    assert image_path.suffix == ".png"
    assert image_bytes.startswith(b"\x89PNG")
    assert not image_path.exists()


def test_extract_document_unreadable_pdf_is_not_rendered(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "broken.pdf"
    path.write_bytes(b"%PDF-garbage")

    def _unreadable(_: Path) -> str:
        raise ExtractionError("bad pdf", code="pdf_unreadable")

    def _render(source: Path, target: Path) -> Path:
        raise AssertionError("render should not be called")

    monkeypatch.setattr(extraction_service, "extract_pdf_text", _unreadable)
    monkeypatch.setattr(extraction_service, "render_pdf_first_page", _render)
    with pytest.raises(ExtractionError) as exc_info:
        extract_document(path, _FakeVisionClient(outputs=[_VALID]), "gpt-4o-mini")
    assert exc_info.value.code == "pdf_unreadable"


def test_sanitize_document_text_strips_control_chars_and_truncates() -> None:
    assert sanitize_document_text("a\x00b\x07c\n") == "a b c"
    assert sanitize_document_text("x" * 50, max_chars=10) == "x" * 10


def test_invoice_extractor_builds_invoice(tmp_path: Path) -> None:
    extractor = InvoiceExtractor(_FakeVisionClient(outputs=[_VALID]), "gpt-4o-mini")
    invoice = extractor.extract(_image(tmp_path))
    assert invoice.invoice_number == "A-1"
    assert invoice.total_amount == 150
    assert invoice.items[0].description == "Comprobante procesado"
    assert invoice.metadata.model == "gpt-4o-mini"


def test_invoice_extractor_labels_pdf_results(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "transfer.pdf"
    path.write_bytes(b"%PDF-1.4")
    monkeypatch.setattr(extraction_service, "extract_pdf_text", lambda _: "texto")
    extractor = InvoiceExtractor(_FakeVisionClient(outputs=[_VALID]), "gpt-4o-mini")

    invoice = extractor.extract(path)
    assert invoice.metadata.model == "gpt-4o-mini (PDF OCR)"
    assert invoice.items[0].description == "Comprobante procesado (PDF)"


def test_invoice_extractor_process_reports_failures(tmp_path: Path) -> None:
    extractor = InvoiceExtractor(_FakeVisionClient(outputs=["x", "y"]), "gpt-4o-mini")
    result = extractor.process(_image(tmp_path))
    assert not result.success
    assert result.invoice is None
    assert result.error_code == "invalid_json"


def test_demo_client_round_trip(tmp_path: Path) -> None:
    client, model = build_vision_client(Settings(demo_mode=True))
    assert isinstance(client, DemoVisionClient)
    result = InvoiceExtractor(client, model).process(_image(tmp_path))
    assert result.success
    assert result.invoice is not None
    assert result.invoice.invoice_number == "DEMO-1"
    assert result.invoice.metadata.model == "DEMO"


def test_build_vision_client_requires_key() -> None:
    with pytest.raises(ExtractionError) as exc_info:
        build_vision_client(Settings(openai_api_key=None, demo_mode=False))
    assert exc_info.value.code == "missing_api_key"
