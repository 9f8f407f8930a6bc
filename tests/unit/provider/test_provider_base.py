"""Tests for shared provider helpers, the offline adapter and the registry."""

import pytest

from parley.config.schema import Config, ProfileConfig, ProviderConfig
from parley.core.errors import ConfigurationError
from parley.core.types import FileRef, Message, Role, StreamEnd, TextDelta
from parley.provider import create_provider
from parley.provider.base import extract_error_detail, render_user_text, validate_base_url
from parley.provider.offline import DEFAULT_REPLY, OfflineProvider, offline_reply
from parley.provider.registry import ProviderRegistry


class TestValidateBaseUrl:
    @pytest.mark.parametrize("url", [
        "https://api.openai.com/v1",
        "http://localhost:11434/v1",
        "http://127.0.0.1:8080",
    ])
    def test_allowed(self, url: str) -> None:
        validate_base_url(url)

    @pytest.mark.parametrize("url", [
        "",
        "http://example.com/v1",
        "ftp://example.com",
        "api.openai.com/v1",
    ])
    def test_rejected(self, url: str) -> None:
        with pytest.raises(ConfigurationError):
            validate_base_url(url)


class TestExtractErrorDetail:
    def test_nested_message(self) -> None:
        assert extract_error_detail(b'{"error": {"message": "bad key"}}') == "bad key"

    def test_list_form(self) -> None:
        assert extract_error_detail(b'[{"error": {"message": "quota"}}]') == "quota"

    def test_string_error(self) -> None:
        assert extract_error_detail(b'{"error": "nope"}') == "nope"

    def test_plain_text(self) -> None:
        assert extract_error_detail(b"Service Unavailable") == "Service Unavailable"


class TestRenderUserText:
    def test_no_attachments(self) -> None:
        assert render_user_text(Message(id="m", role=Role.USER, text="hi")) == "hi"

    def test_text_attachment_inlined(self) -> None:
        notes = FileRef(name="a.txt", mime_type="text/plain", size=2048, content="hello")
        message = Message(id="m", role=Role.USER, text="look", attachments=(notes,))

        assert render_user_text(message) == (
            "[File: a.txt (text/plain, 2.0 KB)]\nContent:\nhello\n\nMessage: look"
        )

    def test_attachment_without_text(self) -> None:
        notes = FileRef(name="a.txt", mime_type="text/plain", size=3)
        message = Message(id="m", role=Role.USER, text="", attachments=(notes,))

        assert render_user_text(message).endswith("The user uploaded these files. Analyze them.")


class TestOfflineProvider:
    def test_replies(self) -> None:
        assert offline_reply("Hello there").startswith("Hello!")
        assert offline_reply("thanks!") == "You're welcome!"
        assert offline_reply("explain monads") == DEFAULT_REPLY

    @pytest.mark.asyncio
    async def test_streams_words(self) -> None:
        provider = OfflineProvider()
        message = Message(id="m", role=Role.USER, text="thank you")

        events = [e async for e in provider.stream("", [], message)]

        assert "".join(e.text for e in events if isinstance(e, TextDelta)) == "You're welcome!"
        assert events[-1] == StreamEnd("stop")

    @pytest.mark.asyncio
    async def test_complete_summarizes_user_lines(self) -> None:
        text = await OfflineProvider().complete("s", "User: cats\nAssistant: ok\nUser: dogs")

        assert text == "The user talked about: cats; dogs"


def registry_config() -> Config:
    return Config(
        default_profile="local",
        providers={
            "offline": ProviderConfig(type="offline", api_key_env="", base_url="", auth_method="none"),
            "openai": ProviderConfig(
                type="openai", api_key_env="PARLEY_TEST_MISSING_KEY", base_url="https://api.test/v1"
            ),
        },
        profiles={
            "local": ProfileConfig(provider="offline", model="built-in"),
            "remote": ProfileConfig(provider="openai", model="gpt-test"),
        },
    )


class TestProviderRegistry:
    def test_lazy_and_cached(self) -> None:
        registry = ProviderRegistry(registry_config())

        first = registry.get_for_profile("local")
        second = registry.get_for_profile()

        assert isinstance(first, OfflineProvider)
        assert first is second
        assert registry.cached_providers == ["offline:built-in"]

    def test_missing_key_fails_on_use_only(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("PARLEY_TEST_MISSING_KEY", raising=False)
        registry = ProviderRegistry(registry_config())

        with pytest.raises(ConfigurationError, match="PARLEY_TEST_MISSING_KEY"):
            registry.get_for_profile("remote")

    def test_unknown_provider(self) -> None:
        with pytest.raises(KeyError):
            ProviderRegistry(registry_config()).get("nope", "model")

    @pytest.mark.asyncio
    async def test_aclose_clears_cache(self) -> None:
        registry = ProviderRegistry(registry_config())
        registry.get_for_profile("local")

        await registry.aclose()

        assert registry.cached_providers == []

    def test_create_provider_by_type(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PARLEY_TEST_GROQ_KEY", "k")
        config = ProviderConfig(
            type="groq", api_key_env="PARLEY_TEST_GROQ_KEY", base_url="https://api.groq.test/v1"
        )

        provider = create_provider(config, "llama")

        assert provider.provider_label == "Groq"
        assert provider.model == "llama"
