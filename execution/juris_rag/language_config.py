"""
Language Configuration for the Jurisprudence RAG pipeline

Per-language defaults for chunk sizing, full-text search and models.
Brazilian Portuguese is the only corpus language today; the table is kept
so another FTS dictionary can be added without touching the store.
"""

from dataclasses import dataclass


# Supported languages with their PostgreSQL FTS config names and token ratios
SUPPORTED_LANGUAGES = {
    "pt": {
        "name": "Portuguese",
        "fts_config": "portuguese",
        "chars_per_token": 4,
    },
    "en": {
        "name": "English",
        "fts_config": "english",
        "chars_per_token": 4,
    },
}

# Whitelist of valid FTS language configs (for SQL injection prevention)
VALID_FTS_CONFIGS = frozenset(lang["fts_config"] for lang in SUPPORTED_LANGUAGES.values())


@dataclass
class LanguageConfig:
    """Language and model configuration for one deployment."""
    language: str = "pt"
    embedding_model: str = "text-embedding-3-small"
    embedding_provider: str = "openai"
    embedding_dimensions: int = 768
    llm_model: str = "google/gemini-2.5-flash-lite"
    fts_language: str = "portuguese"
    chars_per_token: int = 4
    document_family: str = "judicial"

    @classmethod
    def for_language(cls, language: str) -> "LanguageConfig":
        """
        Factory method returning defaults for a given language.

        Args:
            language: ISO 639-1 code ("pt" or "en")

        Returns:
            LanguageConfig with appropriate defaults
        """
        if language not in SUPPORTED_LANGUAGES:
            language = "pt"

        settings = SUPPORTED_LANGUAGES[language]
        return cls(
            language=language,
            fts_language=settings["fts_config"],
            chars_per_token=settings["chars_per_token"],
        )

    def validate_fts_language(self) -> bool:
        """Check that fts_language is in the whitelist."""
        return self.fts_language in VALID_FTS_CONFIGS
