"""Tests for LanguageConfig and language configuration."""

from execution.juris_rag.language_config import (
    LanguageConfig,
    SUPPORTED_LANGUAGES,
    VALID_FTS_CONFIGS,
)


class TestLanguageConfig:
    """Tests for the LanguageConfig dataclass and factory."""

    def test_portuguese_defaults(self):
        config = LanguageConfig.for_language("pt")
        assert config.language == "pt"
        assert config.embedding_model == "text-embedding-3-small"
        assert config.embedding_provider == "openai"
        assert config.embedding_dimensions == 768
        assert config.fts_language == "portuguese"
        assert config.chars_per_token == 4
        assert config.document_family == "judicial"

    def test_english_fts(self):
        config = LanguageConfig.for_language("en")
        assert config.language == "en"
        assert config.fts_language == "english"

    def test_unsupported_language_falls_back_to_portuguese(self):
        config = LanguageConfig.for_language("xx")
        assert config.language == "pt"
        assert config.fts_language == "portuguese"

    def test_validate_fts_language_valid(self):
        assert LanguageConfig.for_language("pt").validate_fts_language() is True

    def test_validate_fts_language_invalid(self):
        assert LanguageConfig(fts_language="klingon").validate_fts_language() is False


class TestSupportedLanguages:

    def test_portuguese_in_supported(self):
        assert "pt" in SUPPORTED_LANGUAGES
        assert SUPPORTED_LANGUAGES["pt"]["fts_config"] == "portuguese"

    def test_valid_fts_configs_frozenset(self):
        assert isinstance(VALID_FTS_CONFIGS, frozenset)
        assert "portuguese" in VALID_FTS_CONFIGS
        assert "english" in VALID_FTS_CONFIGS
