"""Tests for the task-specific entry points."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from aiprovider.config import reset_config
from aiprovider.model_registry import get_model_for_provider
from aiprovider.models import AIProfile, KeySource, TrackingContext
from aiprovider.tasks import (
    FileSearchClient,
    get_api_key_for_classifier,
    get_file_search_client,
    get_raw_file_search_client,
    get_studio_key_for_live,
    get_vertex_token_for_live,
    quick_generate,
    tracked_generate_content,
)

CONSULTANT = "consultant-1"

USAGE = SimpleNamespace(
    prompt_token_count=12,
    candidates_token_count=4,
    cached_content_token_count=0,
    thoughts_token_count=6,
    total_token_count=22,
)


def _response(usage=USAGE):
    return SimpleNamespace(
        text="Answer",
        candidates=[
            {"content": {"parts": [{"text": "let me think", "thought": True}, {"text": "Answer"}]}}
        ],
        usage_metadata=usage,
    )


def _sdk_client(response=None, error=None):
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock(return_value=response, side_effect=error)
    return client


@pytest.fixture
def env_key(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "env-key")
    reset_config()
    return "env-key"


class TestQuickGenerate:
    @pytest.mark.asyncio
    async def test_returns_answer_and_tracks(self, selector, store, factory, usage_recorder):
        store.set_pool(["pool-key"])
        sdk = _sdk_client(_response())
        factory.studio_client = lambda api_key: sdk

        result = await quick_generate(
            CONSULTANT,
            [{"role": "user", "parts": [{"text": "hi"}]}],
            "summary",
            system_instruction="be brief",
            thinking_level="high",
            selector=selector,
        )

        assert result.text == "Answer"
        assert result.usage_metadata is USAGE
        assert len(result.candidates) == 1

        kwargs = sdk.aio.models.generate_content.call_args.kwargs
        assert kwargs["model"] == get_model_for_provider("studio")
        assert kwargs["config"]["thinking_config"] == {"thinking_budget": 16384, "include_thoughts": True}
        assert kwargs["config"]["system_instruction"] == {"role": "user", "parts": [{"text": "be brief"}]}

        record = usage_recorder.track.call_args.args[0]
        assert record.feature == "summary"
        assert record.consultant_id == CONSULTANT
        assert record.client_id is None
        assert record.key_source == KeySource.SUPERADMIN

    @pytest.mark.asyncio
    async def test_cleanup_runs_on_failure(self, selector, store, factory, setting_factory):
        store.settings[CONSULTANT] = [setting_factory("v-set", CONSULTANT)]
        build_vertex = factory.vertex

        def failing_vertex(*args, **kwargs):
            adapter = build_vertex(*args, **kwargs)
            adapter.client.aio.models.generate_content.side_effect = ValueError("bad request")
            return adapter

        factory.vertex = failing_vertex

        with pytest.raises(ValueError, match="bad request"):
            await quick_generate(CONSULTANT, [], "summary", selector=selector)

        assert len(selector.credentials) == 0

    @pytest.mark.asyncio
    async def test_thought_only_response_is_empty(self, selector, store, factory):
        store.set_pool(["pool-key"])
        truncated = SimpleNamespace(
            text=None,
            candidates=[
                {
                    "content": {"parts": [{"text": "internal reasoning", "thought": True}]},
                    "finish_reason": "MAX_TOKENS",
                }
            ],
            usage_metadata=USAGE,
        )
        factory.studio_client = lambda api_key: _sdk_client(truncated)

        result = await quick_generate(CONSULTANT, [], "summary", selector=selector)

        assert result.text == ""
        assert result.usage_metadata is USAGE

    @pytest.mark.asyncio
    async def test_blocked_response_is_empty(
        self, selector, store, factory, setting_factory, caplog
    ):
        store.settings[CONSULTANT] = [setting_factory("v-set", CONSULTANT)]
        blocked = SimpleNamespace(
            text=None, candidates=[{"finish_reason": "SAFETY"}], usage_metadata=None
        )
        build_vertex = factory.vertex

        def blocked_vertex(*args, **kwargs):
            adapter = build_vertex(*args, **kwargs)
            adapter.client.aio.models.generate_content.return_value = blocked
            return adapter

        factory.vertex = blocked_vertex

        result = await quick_generate(CONSULTANT, [], "summary", selector=selector)

        assert result.text == ""
        assert "got no usable text" in caplog.text
        assert len(selector.credentials) == 0

    @pytest.mark.asyncio
    async def test_explicit_model(self, selector, store, factory):
        store.set_pool(["pool-key"])
        sdk = _sdk_client(_response())
        factory.studio_client = lambda api_key: sdk

        await quick_generate(CONSULTANT, [], "summary", model="gemini-custom", selector=selector)

        assert sdk.aio.models.generate_content.call_args.kwargs["model"] == "gemini-custom"


class TestClassifierKey:
    @pytest.mark.asyncio
    async def test_pool_first(self, selector, store, env_key):
        store.set_pool(["pool-key"])
        assert await get_api_key_for_classifier(selector) == "pool-key"

    @pytest.mark.asyncio
    async def test_env_when_pool_empty(self, selector, env_key):
        assert await get_api_key_for_classifier(selector) == "env-key"

    @pytest.mark.asyncio
    async def test_env_when_pool_unavailable(self, selector, store, env_key):
        store.failing.add("get_key_pool_row")
        assert await get_api_key_for_classifier(selector) == "env-key"

    @pytest.mark.asyncio
    async def test_none_without_keys(self, selector):
        assert await get_api_key_for_classifier(selector) is None


class TestLiveStudio:
    @pytest.mark.asyncio
    async def test_own_key(self, selector, store):
        store.profiles[CONSULTANT] = AIProfile(user_id=CONSULTANT, api_keys=["own-key"])
        result = await get_studio_key_for_live(CONSULTANT, selector)
        assert result["api_key"] == "own-key"
        assert result["model_id"] == "gemini-2.5-flash-native-audio-preview-12-2025"

    @pytest.mark.asyncio
    async def test_none_without_keys(self, selector):
        assert await get_studio_key_for_live(CONSULTANT, selector) is None


class TestLiveVertex:
    @pytest.mark.asyncio
    async def test_mints_token(self, selector, store, setting_factory):
        store.settings[CONSULTANT] = [setting_factory("v-set", CONSULTANT, project_id="live-proj")]

        result = await get_vertex_token_for_live("client-1", CONSULTANT, selector)

        assert result == {
            "access_token": "ya29.token",
            "project_id": "live-proj",
            "location": "us-central1",
            "model_id": "gemini-live-2.5-flash-native-audio",
        }

    @pytest.mark.asyncio
    async def test_respects_usage_scope(self, selector, store, setting_factory):
        store.settings[CONSULTANT] = [
            setting_factory("v-set", CONSULTANT, usage_scope="clients_only")
        ]
        assert await get_vertex_token_for_live(CONSULTANT, CONSULTANT, selector) is None

    @pytest.mark.asyncio
    async def test_skips_failing_setting(self, selector, store, setting_factory, factory):
        store.settings[CONSULTANT] = [
            setting_factory("first", CONSULTANT, project_id="proj-a"),
            setting_factory("second", CONSULTANT, project_id="proj-b"),
        ]
        tokens = iter([RuntimeError("refresh failed"), "ya29.second"])

        def credentials(creds):
            sa = MagicMock()
            outcome = next(tokens)
            if isinstance(outcome, Exception):
                sa.refresh.side_effect = outcome
            else:
                sa.token = outcome
            return sa

        factory.service_account_credentials = credentials

        result = await get_vertex_token_for_live("client-1", CONSULTANT, selector)

        assert result["access_token"] == "ya29.second"
        assert result["project_id"] == "proj-b"

    @pytest.mark.asyncio
    async def test_listing_failure(self, selector, store):
        store.failing.add("list_backend_settings")
        assert await get_vertex_token_for_live("client-1", CONSULTANT, selector) is None


class TestFileSearch:
    @pytest.mark.asyncio
    async def test_env_key_first(self, selector, store, env_key, factory):
        store.set_pool(["pool-key"])
        fs = await get_file_search_client("u1", selector)
        assert isinstance(fs, FileSearchClient)
        assert factory.studio_keys == ["env-key"]
        assert fs.client.tracking_context.key_source == KeySource.ENV
        assert store.calls["get_profile"] == 0

    @pytest.mark.asyncio
    async def test_unknown_user(self, selector):
        assert await get_file_search_client("ghost", selector) is None

    @pytest.mark.asyncio
    async def test_own_keys_when_opted_out(self, selector, store, factory):
        store.set_pool(["pool-key"])
        store.profiles["u1"] = AIProfile(user_id="u1", use_shared_keys=False, api_keys=["mine"])

        fs = await get_file_search_client("u1", selector)

        assert factory.studio_keys == ["mine"]
        assert fs.metadata.display_name == "Google AI Studio"
        assert fs.client.tracking_context.consultant_id == "u1"
        assert fs.client.tracking_context.key_source == KeySource.USER

    @pytest.mark.asyncio
    async def test_set_feature_and_client(self, selector, env_key):
        fs = await get_file_search_client("u1", selector)
        fs.set_feature("doc-search", "client")
        fs.set_client_id("c-7")
        ctx = fs.client.tracking_context
        assert (ctx.feature, ctx.caller_role, ctx.client_id) == ("doc-search", "client", "c-7")

    @pytest.mark.asyncio
    async def test_raw_client(self, selector, store):
        store.set_pool(["pool-key"])
        store.profiles["u1"] = AIProfile(user_id="u1")

        raw = await get_raw_file_search_client("u1", selector)

        assert raw["key_source"] == KeySource.SUPERADMIN
        assert raw["metadata"].display_name == "Google AI Studio"
        assert raw["client"] is not None

    @pytest.mark.asyncio
    async def test_raw_client_missing_key(self, selector, store):
        store.profiles["u1"] = AIProfile(user_id="u1")
        assert await get_raw_file_search_client("u1", selector) is None


class TestTrackedGenerateContent:
    def _ctx(self):
        return TrackingContext(
            consultant_id="v1", client_id="c1", key_source=KeySource.USER, feature="rag"
        )

    @pytest.mark.asyncio
    async def test_records_usage(self, usage_recorder):
        client = _sdk_client(_response())

        result = await tracked_generate_content(
            client, {"model": "m", "contents": []}, self._ctx(), has_file_search=True
        )

        assert result.text == "Answer"
        client.aio.models.generate_content.assert_awaited_once_with(model="m", contents=[])
        record = usage_recorder.track.call_args.args[0]
        assert record.has_file_search is True
        assert record.error is False
        assert (record.input_tokens, record.thinking_tokens, record.total_tokens) == (12, 6, 22)
        assert record.client_id == "c1"

    @pytest.mark.asyncio
    async def test_records_error_and_reraises(self, usage_recorder):
        client = _sdk_client(error=RuntimeError("backend down"))

        with pytest.raises(RuntimeError, match="backend down"):
            await tracked_generate_content(client, {"model": "m"}, self._ctx())

        record = usage_recorder.track.call_args.args[0]
        assert record.error is True
        assert record.total_tokens == 0

    @pytest.mark.asyncio
    async def test_no_usage_no_record(self, usage_recorder):
        client = _sdk_client(_response(usage=None))
        await tracked_generate_content(client, {"model": "m"}, self._ctx())
        usage_recorder.track.assert_not_called()
