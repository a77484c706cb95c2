"""
Contextual Enricher (contextual retrieval)

Asks a generative model for a one or two sentence summary that situates a
chunk inside its document. Short legal excerpts such as "Dou provimento ao
recurso" are ambiguous on their own; the summary is embedded in front of the
chunk so the vector carries the case context. Only the summary is stored.

Enrichment is best-effort: any failure yields an empty summary.
"""

import os
import logging
from typing import Optional
from dataclasses import dataclass

from .errors import EnrichmentFailed
from .language_config import LanguageConfig
from .language_patterns import LLM_PROMPTS

logger = logging.getLogger(__name__)


@dataclass
class EnricherConfig:
    """Configuration for the contextual summary call."""
    model: str = "google/gemini-2.5-flash-lite"
    base_url: Optional[str] = None
    max_tokens: int = 150
    temperature: float = 0.2
    timeout_seconds: float = 20.0
    preview_chars: int = 3000
    chunk_chars: int = 1500
    enabled: bool = True


def build_embedding_text(summary: str, content: str) -> str:
    """Text that is actually embedded: summary first, when there is one."""
    if summary:
        return f"{summary}\n\n{content}"
    return content


class ContextualEnricher:
    """Generates situating summaries through an OpenAI-compatible chat endpoint."""

    def __init__(
        self,
        config: Optional[EnricherConfig] = None,
        language_config: Optional[LanguageConfig] = None,
        client=None,
    ):
        self.config = config or EnricherConfig()
        self._language_config = language_config or LanguageConfig.for_language("pt")
        self._lang = self._language_config.language
        self._client = client

    def _get_client(self):
        """Get or create the cached OpenAI client."""
        if self._client is None:
            api_key = os.getenv("LLM_API_KEY")
            if not api_key:
                raise EnrichmentFailed("LLM_API_KEY not set")

            from openai import OpenAI
            self._client = OpenAI(
                base_url=self.config.base_url or os.getenv(
                    "LLM_BASE_URL", "https://ai.gateway.lovable.dev/v1"
                ),
                api_key=api_key,
                timeout=self.config.timeout_seconds,
            )
        return self._client

    def summarize(self, prompt: str) -> str:
        """Run one completion; raises EnrichmentFailed on any problem."""
        try:
            response = self._get_client().chat.completions.create(
                model=self.config.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
            )
        except EnrichmentFailed:
            raise
        except Exception as e:
            raise EnrichmentFailed(str(e)) from e

        if not response.choices:
            raise EnrichmentFailed("empty completion")
        content = response.choices[0].message.content
        if not content or not content.strip():
            raise EnrichmentFailed("empty completion")
        return content.strip()

    def enrich(self, chunk_content: str, document_preview: str, document_title: str) -> str:
        """
        Produce a situating summary for a chunk.

        Args:
            chunk_content: The chunk text
            document_preview: Beginning of the full document
            document_title: Display name of the document

        Returns:
            The summary, or "" when enrichment is disabled or fails
        """
        if not self.config.enabled:
            return ""

        template = LLM_PROMPTS.get(self._lang, LLM_PROMPTS["pt"])["contextualize_chunk"]
        prompt = template.format(
            document_title=document_title,
            document_preview=document_preview[:self.config.preview_chars],
            chunk_content=chunk_content[:self.config.chunk_chars],
        )

        try:
            return self.summarize(prompt)
        except EnrichmentFailed as e:
            logger.warning(f"Contextual summary skipped for '{document_title}': {e}")
            return ""
