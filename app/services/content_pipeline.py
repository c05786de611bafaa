"""
Default work function: an 8-step SEO/AEO article pipeline.

    1 Analyzing SERP        search-provider
    2 Gathering References  search-provider (news)
    3 Building Outline      ai-provider
    4 Generating Content    ai-provider
    5 Optimizing for AEO    ai-provider
    6 Generating Schema     local
    7 Quality Review        local
    8 Publishing            publish-target (only when requested and configured)

Prompts and scoring here are intentionally thin; the orchestrator only
cares that `run()` reports progress and resolves or raises.
"""
import html
import json
import re
from typing import Any, Dict, List, Optional

from app.models.job_record import JobRequest
from app.services.circuit_breaker import (
    AI_PROVIDER,
    PUBLISH_TARGET,
    SEARCH_PROVIDER,
    CircuitBreakerRegistry,
)
from app.services.errors import TerminalJobError
from app.services.providers import AIClient, SerperClient, WordPressClient, organic_results
from app.utils.logger import logger

STEPS = (
    "Analyzing SERP",
    "Gathering References",
    "Building Outline",
    "Generating Content",
    "Optimizing for AEO",
    "Generating Schema",
    "Quality Review",
    "Publishing",
)
TOTAL_STEPS = len(STEPS)

MIN_WORDS = 50

SYSTEM_PROMPT = (
    "You are an SEO and answer-engine optimization writer. "
    "Write accurate, well-structured HTML using <h2>, <h3>, <p> and <ul>. "
    "Never invent statistics or sources."
)


def _word_count(markup: str) -> int:
    return len(re.sub(r"<[^>]+>", " ", markup).split())


class ContentPipeline:
    """Runs one generate/refresh request end to end."""

    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        search: SerperClient,
        ai: Optional[AIClient],
        publisher: Optional[WordPressClient] = None,
    ):
        self.breakers = breakers
        self.search = search
        self.ai = ai
        self.publisher = publisher

    async def run(self, request: JobRequest, progress) -> Dict[str, Any]:
        """Run all steps. A missing AI client raises TerminalJobError, which only
        skips the retry budget when RETRY_TERMINAL_ERRORS is false."""
        if self.ai is None:
            raise TerminalJobError("AI provider not configured")

        keyword = request.keyword
        extra = request.model_extra or {}

        await progress(1, TOTAL_STEPS, STEPS[0])
        serp = await self.breakers.call(SEARCH_PROVIDER, self.search.search, keyword)
        competitors = organic_results(serp)
        questions = [q.get("question") for q in serp.get("peopleAlsoAsk") or [] if q.get("question")]

        await progress(2, TOTAL_STEPS, STEPS[1])
        news = await self.breakers.call(SEARCH_PROVIDER, self.search.search, keyword, 5, "news")
        references = [
            {"title": item.get("title", ""), "url": item.get("link", "")}
            for item in (news.get("news") or news.get("organic") or [])[:5]
            if item.get("link")
        ]

        await progress(3, TOTAL_STEPS, STEPS[2])
        outline = await self.breakers.call(
            AI_PROVIDER,
            self.ai.complete,
            SYSTEM_PROMPT,
            self._outline_prompt(keyword, competitors),
            request.model,
        )

        await progress(4, TOTAL_STEPS, STEPS[3])
        body = await self.breakers.call(
            AI_PROVIDER,
            self.ai.complete,
            SYSTEM_PROMPT,
            self._content_prompt(request, outline, references),
            request.model,
        )

        await progress(5, TOTAL_STEPS, STEPS[4])
        faq = await self._answer_questions(keyword, questions, request.model)
        article = body + self._faq_html(faq)

        await progress(6, TOTAL_STEPS, STEPS[5])
        schema = self._build_schema(keyword, faq)

        await progress(7, TOTAL_STEPS, STEPS[6])
        words = _word_count(article)
        if words < MIN_WORDS and request.mode == "generate":
            # Model returned an empty or truncated article; try again
            raise RuntimeError(f"generated content too short ({words} words)")

        await progress(8, TOTAL_STEPS, STEPS[7])
        post = None
        if extra.get("publish"):
            post = await self._publish(keyword, article, extra.get("postStatus", "draft"))

        logger.info("pipeline.finished", extra={"step": TOTAL_STEPS, "total_steps": TOTAL_STEPS})
        return {
            "title": keyword.title(),
            "html": article,
            "outline": outline,
            "faq": faq,
            "schema": schema,
            "references": references,
            "wordCount": words,
            "mode": request.mode,
            "post": post,
        }

    # ------------------------------------------------------------------

    def _outline_prompt(self, keyword: str, competitors: List[Dict[str, Any]]) -> str:
        titles = "\n".join(f"- {c.get('title', '')}" for c in competitors)
        return (
            f"Create an H2/H3 outline for an article targeting '{keyword}'.\n"
            f"Top ranking pages:\n{titles or '- (none found)'}\n"
            "Cover the gaps those pages leave."
        )

    def _content_prompt(self, request: JobRequest, outline: str, references: List[Dict[str, str]]) -> str:
        sources = "\n".join(f"- {r['title']}: {r['url']}" for r in references)
        if request.mode == "refresh" and request.existing_content:
            return (
                f"Refresh this article about '{request.keyword}' using the outline below. "
                f"Keep what is still accurate.\n\nOUTLINE:\n{outline}\n\n"
                f"EXISTING ARTICLE:\n{request.existing_content}\n\nSOURCES:\n{sources}"
            )
        return (
            f"Write the full article about '{request.keyword}' following this outline.\n\n"
            f"OUTLINE:\n{outline}\n\nSOURCES:\n{sources}"
        )

    async def _answer_questions(self, keyword: str, questions: List[str], model: Optional[str]) -> List[Dict[str, str]]:
        faq = []
        for question in questions[:5]:
            answer = await self.breakers.call(
                AI_PROVIDER,
                self.ai.complete,
                SYSTEM_PROMPT,
                f"In two or three sentences, answer for a reader researching '{keyword}': {question}",
                model,
                0.2,
                400,
            )
            faq.append({"question": question, "answer": answer})
        return faq

    @staticmethod
    def _faq_html(faq: List[Dict[str, str]]) -> str:
        if not faq:
            return ""
        items = "".join(
            f"<h3>{html.escape(item['question'])}</h3>{item['answer']}" for item in faq
        )
        return f"<h2>Frequently Asked Questions</h2>{items}"

    @staticmethod
    def _build_schema(keyword: str, faq: List[Dict[str, str]]) -> str:
        graph: List[Dict[str, Any]] = [
            {"@type": "Article", "headline": keyword.title()},
        ]
        if faq:
            graph.append({
                "@type": "FAQPage",
                "mainEntity": [
                    {
                        "@type": "Question",
                        "name": item["question"],
                        "acceptedAnswer": {"@type": "Answer", "text": re.sub(r"<[^>]+>", "", item["answer"])},
                    }
                    for item in faq
                ],
            })
        return json.dumps({"@context": "https://schema.org", "@graph": graph})

    async def _publish(self, keyword: str, article: str, status: str) -> Optional[Dict[str, Any]]:
        if self.publisher is None or not (self.publisher.configured or self.publisher.test_mode):
            logger.warning("pipeline.publish_skipped", extra={"service": PUBLISH_TARGET})
            return None
        slug = re.sub(r"[^a-z0-9]+", "-", keyword.lower()).strip("-")
        return await self.breakers.call(
            PUBLISH_TARGET,
            self.publisher.publish,
            keyword.title(),
            article,
            slug,
            status,
        )
