import httpx
import numpy as np
import pytest

from foodlens_core.errors import OCRError
from foodlens_core.google_vision import GoogleVisionClient
from foodlens_core.models import ParsedText
from foodlens_core.ocr import (
    GoogleVisionOCR,
    Recognition,
    TextExtractor,
    apply_brand_hint,
    preprocess_crop,
    resolve_language_hints,
    tesseract_lang,
)


class RecordingRecognizer:
    def __init__(self, text: str, brand_hint: str | None = None):
        self.text = text
        self.brand_hint = brand_hint
        self.calls: list[tuple[tuple[int, ...], list[str]]] = []

    async def recognize(self, image, language_hints):
        self.calls.append((image.shape, list(language_hints)))
        return Recognition(self.text, self.brand_hint)


class TestLanguageHints:
    def test_default_pair(self):
        assert resolve_language_hints(None) == ["es", "en"]
        assert resolve_language_hints("  ") == ["es", "en"]

    def test_aliases_and_separators(self):
        assert resolve_language_hints("spa+eng") == ["es", "en"]
        assert resolve_language_hints("French, de") == ["fr", "de"]

    def test_capped_at_four(self):
        assert resolve_language_hints("es en fr pt it de") == ["es", "en", "fr", "pt"]

    def test_tesseract_codes(self):
        assert tesseract_lang(["es", "en"]) == "spa+eng"
        assert tesseract_lang(["xx"]) == "eng"


class TestPreprocess:
    def test_small_color_crop_becomes_larger_grey(self):
        crop = np.zeros((50, 80, 3), dtype=np.uint8)
        crop[10:40, 20:60] = 255
        out = preprocess_crop(crop)
        assert out.ndim == 2
        assert min(out.shape) >= 50

    def test_bgra_is_accepted(self):
        crop = np.full((400, 400, 4), 128, dtype=np.uint8)
        out = preprocess_crop(crop)
        assert out.ndim == 2

    def test_failure_returns_raw_crop(self):
        bogus = np.zeros((0, 0, 3), dtype=np.uint8)
        assert preprocess_crop(bogus) is bogus


class TestTextExtractor:
    def test_interpret_gates_low_quality(self):
        extractor = TextExtractor(RecordingRecognizer(""), min_chars=6)
        result = extractor.interpret("ab\n!!")
        assert result.low_quality
        assert result.search_candidates == ()

    def test_interpret_finds_barcode_beyond_line_cap(self):
        lines = [f"line {chr(97 + i)}{chr(98 + i)}" for i in range(10)] + ["7501234567890"]
        result = TextExtractor(RecordingRecognizer(""), max_lines=8).interpret("\n".join(lines))
        assert len(result.parsed.raw_lines) == 8
        assert result.barcode == "7501234567890"

    @pytest.mark.asyncio
    async def test_extract_passes_language_hints(self):
        recognizer = RecordingRecognizer("NESTLE\nFitness Cereal\n500g")
        extractor = TextExtractor(recognizer)
        crop = np.full((120, 160, 3), 90, dtype=np.uint8)

        result = await extractor.extract(crop, "eng")

        assert recognizer.calls[0][1] == ["en"]
        assert result.language_hints == ("en",)
        assert not result.low_quality
        assert result.parsed.brand == "NESTLE"
        assert "NESTLE Fitness Cereal 500g" in result.search_candidates

    @pytest.mark.asyncio
    async def test_extract_uses_logo_as_brand(self):
        extractor = TextExtractor(RecordingRecognizer("Galletas rellenas\nSabor vainilla", brand_hint="Oreo"))

        result = await extractor.extract(np.full((120, 160, 3), 90, dtype=np.uint8))

        assert result.brand_hint == "Oreo"
        assert result.parsed.brand == "Oreo"
        assert "Oreo" in result.search_candidates

    def test_logo_does_not_rescue_low_quality_text(self):
        result = TextExtractor(RecordingRecognizer(""), min_chars=6).interpret("ab", brand_hint="Oreo")
        assert result.low_quality
        assert result.search_candidates == ()


class TestBrandHint:
    def test_hint_replaces_text_guess_and_keeps_it_as_name(self):
        parsed = apply_brand_hint(ParsedText(brand="FITNESS", raw_lines=("FITNESS",)), "Nestl\u00e9")
        assert parsed.brand == "Nestl\u00e9"
        assert parsed.product_name == "FITNESS"

    def test_matching_or_missing_hint_leaves_text_alone(self):
        parsed = ParsedText(brand="OREO", product_name="Original")
        assert apply_brand_hint(parsed, "Oreo") is parsed
        assert apply_brand_hint(parsed, None) is parsed
        assert apply_brand_hint(parsed, "   ") is parsed


class TestGoogleVisionOCR:
    @staticmethod
    def _client(handler):
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return http, GoogleVisionClient(http, api_key="k")

    @pytest.mark.asyncio
    async def test_returns_full_text(self):
        seen = {}

        def handler(request):
            seen["body"] = request.read()
            return httpx.Response(200, json={"responses": [{"fullTextAnnotation": {"text": "NESTLE\nFitness"}}]})

        http, vision = self._client(handler)
        async with http:
            recognition = await GoogleVisionOCR(vision).recognize(np.zeros((20, 20, 3), dtype=np.uint8), ["es"])
        assert recognition.text == "NESTLE\nFitness"
        assert recognition.brand_hint is None
        assert b"TEXT_DETECTION" in seen["body"]
        assert b"languageHints" in seen["body"]

    @pytest.mark.asyncio
    async def test_best_logo_becomes_brand_hint(self):
        seen = {}

        def handler(request):
            seen["body"] = request.read()
            return httpx.Response(
                200,
                json={
                    "responses": [
                        {
                            "fullTextAnnotation": {"text": "Galletas"},
                            "logoAnnotations": [
                                {"description": "Nabisco", "score": 0.62},
                                {"description": " Oreo ", "score": 0.91},
                                {"description": "Milka", "score": 0.2},
                            ],
                        }
                    ]
                },
            )

        http, vision = self._client(handler)
        async with http:
            recognition = await GoogleVisionOCR(vision, logo_min_score=0.5).recognize(
                np.zeros((20, 20, 3), dtype=np.uint8), ["es"]
            )
        assert recognition.brand_hint == "Oreo"
        assert b"LOGO_DETECTION" in seen["body"]

    @pytest.mark.asyncio
    async def test_weak_logos_and_disabled_detection_give_no_hint(self):
        bodies = []

        def handler(request):
            bodies.append(request.read())
            return httpx.Response(
                200, json={"responses": [{"logoAnnotations": [{"description": "Milka", "score": 0.3}]}]}
            )

        http, vision = self._client(handler)
        async with http:
            image = np.zeros((20, 20, 3), dtype=np.uint8)
            weak = await GoogleVisionOCR(vision, logo_min_score=0.5).recognize(image, [])
            await GoogleVisionOCR(vision, detect_logos=False).recognize(image, [])
        assert weak.brand_hint is None
        assert b"LOGO_DETECTION" not in bodies[1]

    @pytest.mark.asyncio
    async def test_api_error_becomes_ocr_error(self):
        def handler(request):
            return httpx.Response(200, json={"responses": [{"error": {"code": 3, "message": "bad image"}}]})

        http, vision = self._client(handler)
        async with http:
            with pytest.raises(OCRError):
                await GoogleVisionOCR(vision).recognize(np.zeros((20, 20, 3), dtype=np.uint8), ["es"])

    @pytest.mark.asyncio
    async def test_http_failure_becomes_ocr_error(self):
        http, vision = self._client(lambda request: httpx.Response(500, text="boom"))
        async with http:
            with pytest.raises(OCRError):
                await GoogleVisionOCR(vision).recognize(np.zeros((20, 20, 3), dtype=np.uint8), [])
