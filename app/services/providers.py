"""
HTTP clients for the pipeline's external dependencies.

  - SerperClient:    SERP lookups (google.serper.dev)
  - AIClient:        chat completions through the OpenAI SDK (any compatible base_url)
  - WordPressClient: draft/publish posts through the WP REST API

Clients raise on failure; the circuit breaker registry around each call
decides whether the dependency is still admitted.
"""
from typing import Any, Dict, List, Optional

import httpx
from openai import AsyncOpenAI

from app.config import Settings

SERPER_BASE_URL = "https://google.serper.dev"

_TEST_MODE_PARAGRAPH = (
    "This placeholder paragraph stands in for model output while TEST_MODE is on. "
    "It is long enough to pass the pipeline quality review, so a full generate job "
    "can be exercised locally without an API key, a search key or a WordPress site, "
    "and every progress step from SERP analysis through publishing still fires in order."
)


class ProviderNotConfigured(RuntimeError):
    """A provider was called without the credentials it needs."""


class SerperClient:
    """Client for Serper SERP search (search, news, videos)"""

    def __init__(self, api_key: str, timeout: float = 30.0, test_mode: bool = False,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.timeout = timeout
        self.test_mode = test_mode
        self._transport = transport

    async def search(self, query: str, num: int = 10, search_type: str = "search") -> Dict[str, Any]:
        if self.test_mode:
            return {
                "organic": [
                    {"title": f"{query}: complete guide", "link": "https://example.com/guide", "position": 1},
                    {"title": f"What is {query}?", "link": "https://example.com/what-is", "position": 2},
                ],
                "peopleAlsoAsk": [{"question": f"How does {query} work?"}],
            }
        if not self.api_key:
            raise ProviderNotConfigured("SERPER_API_KEY not configured")

        endpoint = search_type if search_type in ("news", "videos") else "search"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(
                f"{SERPER_BASE_URL}/{endpoint}",
                headers={"X-API-KEY": self.api_key, "Content-Type": "application/json"},
                json={"q": query, "num": num},
            )
            response.raise_for_status()
            return response.json()


class AIClient:
    """Chat-completion client for outline/content generation"""

    def __init__(self, api_key: str, model: str, base_url: Optional[str] = None,
                 timeout: float = 60.0, test_mode: bool = False):
        self.model = model
        self.test_mode = test_mode
        self.client = None
        if not test_mode:
            if not api_key:
                raise ProviderNotConfigured("OPENAI_API_KEY not configured")
            self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    async def complete(self, system: str, prompt: str, model: Optional[str] = None,
                       temperature: float = 0.4, max_tokens: int = 4000) -> str:
        if self.test_mode:
            return f"<p>{prompt[:200]}</p><p>{_TEST_MODE_PARAGRAPH}</p>"

        response = await self.client.chat.completions.create(
            model=model or self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return response.choices[0].message.content or ""


class WordPressClient:
    """Posts content to a WordPress site with an application password"""

    def __init__(self, site_url: str, username: str, app_password: str, timeout: float = 30.0,
                 test_mode: bool = False, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.site_url = site_url.rstrip("/")
        self.username = username
        self.app_password = app_password
        self.timeout = timeout
        self.test_mode = test_mode
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.site_url and self.username and self.app_password)

    async def publish(self, title: str, content: str, slug: Optional[str] = None,
                      status: str = "draft") -> Dict[str, Any]:
        if self.test_mode:
            return {"id": 1, "status": status, "slug": slug or "", "link": f"{self.site_url}/?p=1"}
        if not self.configured:
            raise ProviderNotConfigured("WordPress not configured")

        async with httpx.AsyncClient(
            timeout=self.timeout,
            auth=(self.username, self.app_password),
            transport=self._transport,
        ) as client:
            response = await client.post(
                f"{self.site_url}/wp-json/wp/v2/posts",
                json={"title": title, "content": content, "slug": slug, "status": status},
            )
            response.raise_for_status()
            return response.json()


def build_providers(settings: Settings) -> Dict[str, Any]:
    """Instantiate the clients the default pipeline uses."""
    ai: Optional[AIClient] = None
    if settings.test_mode or settings.openai_api_key:
        ai = AIClient(
            api_key=settings.openai_api_key,
            model=settings.ai_model,
            base_url=settings.ai_base_url,
            timeout=settings.provider_timeout_seconds,
            test_mode=settings.test_mode,
        )
    return {
        "search": SerperClient(settings.serper_api_key, test_mode=settings.test_mode),
        "ai": ai,
        "publisher": WordPressClient(
            settings.wp_site_url,
            settings.wp_username,
            settings.wp_app_password,
            test_mode=settings.test_mode,
        ),
    }


def provider_readiness(settings: Settings) -> Dict[str, bool]:
    return {
        "serper": bool(settings.serper_api_key),
        "ai": bool(settings.openai_api_key),
        "wordpress": settings.wordpress_configured,
    }


def organic_results(serp: Dict[str, Any], limit: int = 5) -> List[Dict[str, Any]]:
    return list(serp.get("organic") or [])[:limit]
