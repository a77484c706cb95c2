"""
Pattern Definitions for the Jurisprudence RAG pipeline

Heading vocabularies per document family, structured-field patterns and
prompt templates. Modules import from here instead of defining patterns inline.
"""

import re

# =============================================================================
# Section Headings by Document Family
# =============================================================================

# Headings are matched at line start, case-insensitively, followed by ':' or whitespace.
SECTION_HEADINGS = {
    "judicial": [
        "EMENTA",
        "RELATÓRIO",
        "VOTO",
        "ACÓRDÃO",
        "DECISÃO",
        "DESPACHO",
        "SENTENÇA",
        "INTIMAÇÃO",
        "CITAÇÃO",
        "EDITAL",
    ],
    "petition": [
        "DOS FATOS",
        "DO DIREITO",
        "DOS PEDIDOS",
        "DO VALOR DA CAUSA",
    ],
}


def build_heading_pattern(headings: list[str]) -> re.Pattern:
    """Compile a line-start heading regex; longer headings win over their prefixes."""
    alternatives = "|".join(
        re.escape(h) for h in sorted(headings, key=len, reverse=True)
    )
    return re.compile(
        rf"^[ \t]*({alternatives})(?=[:\s])",
        re.IGNORECASE | re.MULTILINE,
    )


# =============================================================================
# Structured Fields
# =============================================================================

# CNJ unified case number: NNNNNNN-DD.YYYY.J.TR.OOOO
PROCESS_NUMBER_PATTERN = re.compile(r"\d{7}-\d{2}\.\d{4}\.\d\.\d{2}\.\d{4}")


# =============================================================================
# LLM Prompts
# =============================================================================

LLM_PROMPTS = {
    "pt": {
        "contextualize_chunk": """Documento: "{document_title}"

Início do documento:
{document_preview}

Trecho do documento:
{chunk_content}

Forneça um contexto sucinto (máximo 2 frases) que situe este trecho dentro do documento completo.
Responda apenas com o contexto, sem explicações adicionais.""",
    },
    "en": {
        "contextualize_chunk": """Document: "{document_title}"

Beginning of the document:
{document_preview}

Excerpt:
{chunk_content}

Give a short succinct context (at most 2 sentences) to situate this excerpt within the overall document.
Answer only with the context, nothing else.""",
    },
}
