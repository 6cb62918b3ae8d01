"""Provider manager: picks a configured adapter for each request."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import httpx

from chatrelay.config import Settings
from chatrelay.core import NoProviderAvailableError, get_logger
from chatrelay.providers.base import BaseProvider, ChatMessage, ChatResponse, StreamEvent
from chatrelay.providers.gemini import GeminiProvider
from chatrelay.providers.openrouter import OpenRouterProvider

logger = get_logger(__name__)


class ProviderManager:
    """
    Instantiate the adapters that have credentials and route calls to them.

    Adapters are kept in fallback order: OpenRouter first, then Gemini.
    """

    def __init__(
        self,
        settings: Settings,
        transport_overrides: dict[str, httpx.AsyncBaseTransport] | None = None,
    ):
        self.settings = settings
        self.providers: dict[str, BaseProvider] = {}
        self._transport_overrides = transport_overrides or {}
        self._initialize()

    def _transport(self, provider_id: str) -> httpx.AsyncBaseTransport | None:
        return self._transport_overrides.get(provider_id)

    def _initialize(self) -> None:
        if self.settings.openrouter_api_key:
            self.providers["openrouter"] = OpenRouterProvider(
                api_key=self.settings.openrouter_api_key,
                base_url=self.settings.openrouter_base_url,
                referer=self.settings.openrouter_referer,
                app_title=self.settings.openrouter_app_title,
                timeout_seconds=self.settings.provider_timeout_seconds,
                max_retries=self.settings.provider_max_retries,
                transport=self._transport("openrouter"),
            )
        else:
            logger.warning("OPENROUTER_API_KEY not set; OpenRouter disabled")

        if self.settings.gemini_api_key:
            self.providers["gemini"] = GeminiProvider(
                api_key=self.settings.gemini_api_key,
                base_url=self.settings.gemini_base_url,
                timeout_seconds=self.settings.provider_timeout_seconds,
                max_retries=self.settings.provider_max_retries,
                simulated_token_delay=self.settings.gemini_simulated_token_delay_ms / 1000,
                transport=self._transport("gemini"),
            )
        else:
            logger.warning("GEMINI_API_KEY not set; Gemini disabled")

        logger.info(
            "Provider manager initialized",
            data={"providers": self.configured_providers},
        )

    @property
    def configured_providers(self) -> list[str]:
        return list(self.providers.keys())

    def select(self, provider_name: str | None) -> BaseProvider:
        """
        Return the adapter for ``provider_name``, or the first configured one.

        Raises:
            NoProviderAvailableError: If no adapter has credentials
        """
        if provider_name and provider_name in self.providers:
            return self.providers[provider_name]
        for name, provider in self.providers.items():
            if provider_name:
                logger.info(
                    "Requested provider not configured; falling back",
                    data={"requested": provider_name, "using": name},
                )
            return provider
        raise NoProviderAvailableError()

    async def chat(
        self,
        messages: list[ChatMessage],
        provider_name: str | None,
        model: str,
    ) -> ChatResponse:
        provider = self.select(provider_name)
        return await provider.chat(messages, model)

    async def chat_stream(
        self,
        messages: list[ChatMessage],
        provider_name: str | None,
        model: str,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream from the selected adapter.

        Never raises: setup failures, including having no provider at all,
        become a single terminal ``error`` event.
        """
        try:
            provider = self.select(provider_name)
            stream = provider.chat_stream(messages, model, cancel_event=cancel_event)
        except NoProviderAvailableError as exc:
            logger.error("No provider available for stream")
            yield StreamEvent.failed(exc.message)
            return
        except Exception as exc:
            logger.exception("Provider stream setup failed", data={"error": str(exc)})
            yield StreamEvent.failed("Failed to start upstream stream")
            return

        terminal_sent = False
        try:
            async for event in stream:
                yield event
                if event.is_terminal:
                    terminal_sent = True
                    return
        except Exception as exc:
            if terminal_sent:
                raise
            logger.exception("Provider stream failed", data={"error": str(exc)})
            yield StreamEvent.failed("Upstream stream failed")
        finally:
            await stream.aclose()

    async def aclose(self) -> None:
        for provider in self.providers.values():
            await provider.aclose()
