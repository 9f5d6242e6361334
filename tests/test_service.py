"""Tests for ImageGenerationService dispatch, validation and health check."""

import asyncio
import base64

import httpx
import pytest

from cf_image_generator.exceptions import (
    AppError,
    ErrorKind,
    FatalError,
    InvalidArgumentError,
    TransientError,
    UpstreamUnavailableError,
)
from cf_image_generator.models import SelectionPolicy
from cf_image_generator.prompt_preprocessor import PromptPreprocessor
from cf_image_generator.service import ImageGenerationService
from cf_image_generator.translator import PromptTranslator

from conftest import PNG_BYTES, SpyInferenceClient, make_config


def make_service(outcomes=None, account_count=3, translator=None, **overrides):
    config = make_config(account_count=account_count, **overrides)
    spy = SpyInferenceClient(outcomes)
    return ImageGenerationService(config, inference_client=spy, translator=translator), spy


class StubTranslator(PromptTranslator):
    """Translator that upper-cases marked prompts without network calls."""

    def __init__(self, error=None):
        super().__init__(model="stub-model", preprocessor=PromptPreprocessor())
        self.error = error
        self.calls = []

    async def translate(self, account, text):
        self.calls.append((account.index, text))
        if self.error:
            raise self.error
        return text.upper()


@pytest.mark.asyncio
class TestGenerateImage:

    async def test_success_on_first_account(self):
        service, spy = make_service()
        result = await service.generate_image("a cat", "FLUX.1-Schnell-CF", "1024x768", 4)

        assert result.image_bytes == PNG_BYTES
        assert result.account_index == 0
        assert result.attempts == 1
        assert result.model_path == "@cf/black-forest-labs/flux-1-schnell"
        assert spy.calls == [
            {
                "account": 0,
                "model_path": "@cf/black-forest-labs/flux-1-schnell",
                "prompt": "a cat",
                "width": 1024,
                "height": 768,
                "steps": 4,
            }
        ]

    async def test_failover_tries_accounts_in_order(self):
        outcomes = [TransientError("rate limited"), TransientError("timeout"), TransientError("5xx"), PNG_BYTES]
        service, spy = make_service(outcomes, account_count=4)

        result = await service.generate_image("a cat", "FLUX.1-Schnell-CF", "512x512", 4)

        assert spy.accounts_called == [0, 1, 2, 3]
        assert result.account_index == 3
        assert result.attempts == 4

    async def test_all_transient_reports_upstream_unavailable(self):
        outcomes = [TransientError("first"), TransientError("second"), TransientError("last reason")]
        service, spy = make_service(outcomes)

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await service.generate_image("a cat", "FLUX.1-Schnell-CF", "512x512", 4)

        err = exc_info.value
        assert spy.accounts_called == [0, 1, 2]
        assert err.kind is ErrorKind.UPSTREAM_UNAVAILABLE
        assert err.status == 503
        assert err.attempts == 3
        assert "last reason" in err.message
        assert err.last_error.message == "last reason"

    async def test_fatal_stops_immediately(self):
        outcomes = [FatalError("bad request", upstream_status=400, status=400), PNG_BYTES]
        service, spy = make_service(outcomes)

        with pytest.raises(FatalError) as exc_info:
            await service.generate_image("a cat", "FLUX.1-Schnell-CF", "512x512", 4)

        assert spy.accounts_called == [0]
        assert exc_info.value.status == 400

    async def test_fatal_after_transient_stops(self):
        outcomes = [TransientError("busy"), FatalError("bad request")]
        service, spy = make_service(outcomes)

        with pytest.raises(FatalError):
            await service.generate_image("a cat", "FLUX.1-Schnell-CF", "512x512", 4)
        assert spy.accounts_called == [0, 1]

    async def test_unexpected_exception_is_normalized(self):
        service, spy = make_service([RuntimeError("boom")])

        with pytest.raises(AppError) as exc_info:
            await service.generate_image("a cat", "FLUX.1-Schnell-CF", "512x512", 4)

        assert exc_info.value.kind is ErrorKind.FATAL
        assert exc_info.value.status == 500
        assert spy.accounts_called == [0]

    async def test_default_model_and_steps(self):
        service, spy = make_service(default_steps=3)
        result = await service.generate_image("a cat", None, "512x512")

        assert result.model_id == "FLUX.1-Schnell-CF"
        assert spy.calls[0]["steps"] == 3

    async def test_round_robin_spreads_requests(self):
        service, spy = make_service(selection_policy=SelectionPolicy.ROUND_ROBIN)
        for _ in range(3):
            await service.generate_image("a cat", "FLUX.1-Schnell-CF", "512x512", 4)
        assert spy.accounts_called == [0, 1, 2]

    async def test_slow_account_times_out_and_fails_over(self):
        service, spy = make_service([1.0, PNG_BYTES], request_timeout=0.05)
        result = await service.generate_image("a cat", "FLUX.1-Schnell-CF", "512x512", 4)

        assert spy.accounts_called == [0, 1]
        assert spy.cancelled
        assert result.account_index == 1

    async def test_cancellation_propagates(self):
        service, spy = make_service([30.0], request_timeout=60.0)
        task = asyncio.ensure_future(service.generate_image("a cat", "FLUX.1-Schnell-CF", "512x512", 4))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert spy.cancelled
        assert spy.accounts_called == [0]


@pytest.mark.asyncio
class TestValidation:

    async def test_unknown_model_makes_no_calls(self):
        service, spy = make_service()
        with pytest.raises(InvalidArgumentError) as exc_info:
            await service.generate_image("a cat", "Midjourney", "512x512", 4)

        assert exc_info.value.field == "model_id"
        assert spy.calls == []

    @pytest.mark.parametrize("prompt", ["", "   "])
    async def test_empty_prompt(self, prompt):
        service, spy = make_service()
        with pytest.raises(InvalidArgumentError):
            await service.generate_image(prompt, "FLUX.1-Schnell-CF", "512x512", 4)
        assert spy.calls == []

    @pytest.mark.parametrize("steps", [0, -1, 9, 100])
    async def test_steps_out_of_range(self, steps):
        service, spy = make_service()
        with pytest.raises(InvalidArgumentError) as exc_info:
            await service.generate_image("a cat", "FLUX.1-Schnell-CF", "512x512", steps)

        assert exc_info.value.field == "steps"
        assert spy.calls == []

    @pytest.mark.parametrize("steps", ["4", 4.5, True])
    async def test_steps_must_be_integer(self, steps):
        service, spy = make_service()
        with pytest.raises(InvalidArgumentError):
            await service.generate_image("a cat", "FLUX.1-Schnell-CF", "512x512", steps)
        assert spy.calls == []

    @pytest.mark.parametrize("size", ["0x512", "512x0", "-512x512", "512x-1", "128x512", "512x4096"])
    async def test_dimensions_out_of_range(self, size):
        service, spy = make_service()
        with pytest.raises(InvalidArgumentError):
            await service.generate_image("a cat", "FLUX.1-Schnell-CF", size, 4)
        assert spy.calls == []

    @pytest.mark.parametrize("size", ["", "512", "axb", "512x512x512", None])
    async def test_malformed_size(self, size):
        service, spy = make_service()
        with pytest.raises(InvalidArgumentError) as exc_info:
            await service.generate_image("a cat", "FLUX.1-Schnell-CF", size, 4)
        assert exc_info.value.field == "size"
        assert spy.calls == []


@pytest.mark.asyncio
class TestEnhancement:

    async def test_enhanced_prompt_is_translated_per_attempt(self):
        translator = StubTranslator()
        service, spy = make_service(translator=translator)

        result = await service.generate_image("a cat", "FLUX.1-Schnell-CF", "512x512", 4, enhance=True)

        assert translator.calls == [(0, "a cat")]
        assert spy.calls[0]["prompt"] == "A CAT"
        assert result.prompt == "A CAT"

    async def test_translation_transient_fails_over(self):
        translator = StubTranslator(error=TransientError("translate rate limited"))
        service, spy = make_service(translator=translator)

        with pytest.raises(UpstreamUnavailableError):
            await service.generate_image("a cat", "FLUX.1-Schnell-CF", "512x512", 4, enhance=True)

        assert [c[0] for c in translator.calls] == [0, 1, 2]
        assert spy.calls == []

    async def test_without_translate_model_marker_is_stripped(self):
        service, spy = make_service(translate_model="")
        await service.generate_image("a cat", "FLUX.1-Schnell-CF", "512x512", 4, enhance=True)
        assert spy.calls[0]["prompt"] == "a cat"


@pytest.mark.asyncio
class TestHandleGenerate:

    async def test_success_payload(self):
        service, _ = make_service()
        payload, status = await service.handle_generate("a cat", "FLUX.1-Schnell-CF", "512x512", 4)

        assert status == 200
        assert payload["image"] == "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode()
        assert payload["account_index"] == 0

    async def test_invalid_argument_payload(self):
        service, _ = make_service()
        payload, status = await service.handle_generate("a cat", "unknown", "512x512", 4)

        assert status == 400
        assert payload["kind"] == "invalid_argument"
        assert "无效的模型" in payload["error"]

    async def test_upstream_unavailable_payload(self):
        service, _ = make_service([TransientError("x")] * 3)
        payload, status = await service.handle_generate("a cat", "FLUX.1-Schnell-CF", "512x512", 4)

        assert status == 503
        assert payload["kind"] == "upstream_unavailable"


@pytest.mark.asyncio
class TestConnection:

    async def test_healthy_first_account(self):
        service, spy = make_service()
        result = await service.test_connection()

        assert result.connected
        assert result.account_index == 0
        assert "image" not in result.to_dict()
        assert spy.calls == [
            {
                "account": 0,
                "model_path": "@cf/black-forest-labs/flux-1-schnell",
                "prompt": spy.calls[0]["prompt"],
                "width": 256,
                "height": 256,
                "steps": 1,
            }
        ]

    async def test_probe_uses_first_account_only(self):
        service, spy = make_service([TransientError("connection refused")])
        result = await service.test_connection()

        assert not result.connected
        assert "connection refused" in result.message
        assert spy.accounts_called == [0]

    async def test_unexpected_error_reported_not_raised(self):
        service, _ = make_service([OSError("network unreachable")])
        result = await service.test_connection()

        assert not result.connected
        assert "network unreachable" in result.message

    async def test_cf_ai_connection_raises_app_error(self):
        service, _ = make_service([TransientError("down")])
        with pytest.raises(AppError, match="down"):
            await service.test_cf_ai_connection()

    async def test_cf_ai_connection_ok(self):
        service, _ = make_service()
        await service.test_cf_ai_connection()


class TestSummary:

    def test_parse_size(self):
        service, _ = make_service()
        assert service.parse_size("1024x768") == (1024, 768)
        assert service.parse_size(" 512 X 512 ") == (512, 512)

    def test_config_summary(self):
        service, _ = make_service(api_key="", translate_model="@cf/meta/llama-3.1-8b-instruct")
        summary = service.config_summary()

        assert summary["API_KEY"] is False
        assert summary["CF_TRANSLATE_MODEL"] == "@cf/meta/llama-3.1-8b-instruct"
        assert summary["CF_ACCOUNT_LIST"] is True
        assert summary["CUSTOMER_MODEL_MAP"] is True

    def test_list_models(self):
        service, _ = make_service()
        assert service.list_models()[0] == {
            "id": "FLUX.1-Schnell-CF",
            "path": "@cf/black-forest-labs/flux-1-schnell",
        }

    def test_sync_wrapper_can_be_called_twice(self, monkeypatch):
        image_b64 = base64.b64encode(PNG_BYTES).decode()
        real_async_client = httpx.AsyncClient
        created = []

        def fake_async_client(**kwargs):
            client = real_async_client(
                transport=httpx.MockTransport(
                    lambda request: httpx.Response(200, json={"success": True, "result": {"image": image_b64}})
                ),
                **kwargs,
            )
            created.append(client)
            return client

        monkeypatch.setattr(httpx, "AsyncClient", fake_async_client)
        service = ImageGenerationService(make_config())

        first = service.generate_image_sync("a cat", "FLUX.1-Schnell-CF", "512x512", 4)
        second = service.generate_image_sync("a dog", "FLUX.1-Schnell-CF", "512x512", 4)

        assert first.image_bytes == PNG_BYTES
        assert second.image_bytes == PNG_BYTES
        # one client per event loop, closed when the call returns
        assert len(created) == 2
        assert all(client.is_closed for client in created)

    def test_sync_connection_check_after_generate(self):
        service, spy = make_service()
        service.generate_image_sync("a cat", "FLUX.1-Schnell-CF", "512x512", 4)
        result = service.test_connection_sync()

        assert result.connected
        assert spy.closed
        assert len(spy.calls) == 2
