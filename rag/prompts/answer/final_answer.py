"""Answer prompts and the fixed texts emitted around generated answers.

The grounded instruction restricts the model to the retrieved context; the
general instruction is used only in hybrid mode when nothing was retrieved.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Sequence

GROUNDED_SYSTEM_PROMPT = """You are a helpful AI assistant that answers questions based ONLY on the provided context.

IMPORTANT RULES:
- Answer ONLY using information from the context below
- If the context doesn't contain the answer, clearly state that you don't have that information
- Do NOT use your general knowledge to answer questions
- Be concise and cite specific parts of the context when relevant

Context:
"""

GENERAL_SYSTEM_PROMPT = """You are a helpful AI assistant. Answer the user's question based on your general knowledge.
Be concise, accurate, and helpful. If you're not certain about something, clearly state your level of confidence.
Provide practical and useful information."""

CONTEXT_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class FixedTexts:
    grounded_prefix: str
    general_disclaimer: str
    no_context_apology: str


FIXED_TEXTS: Dict[str, FixedTexts] = {
    "fi": FixedTexts(
        grounded_prefix="📄 Vastaus dokumenttien perusteella:\n\n",
        general_disclaimer=(
            "⚠️ Dokumenteista ei löytynyt tietoa. "
            "Vastaan yleisen tietämykseni perusteella:\n\n"
        ),
        no_context_apology=(
            "Kontekstissa ei ole tietoa tähän kysymykseen. "
            "Varmista että olet ensin ladannut dokumentteja järjestelmään "
            "käyttämällä 'Ingest Document' -toimintoa."
        ),
    ),
    "en": FixedTexts(
        grounded_prefix="📄 Answer based on the documents:\n\n",
        general_disclaimer=(
            "⚠️ No information was found in the documents. "
            "Answering from general knowledge:\n\n"
        ),
        no_context_apology=(
            "The context has no information about this question. "
            "Make sure you have first loaded documents into the system "
            "using the 'Ingest Document' function."
        ),
    ),
}


def fixed_texts(language: str) -> FixedTexts:
    try:
        return FIXED_TEXTS[language]
    except KeyError:
        raise ValueError(f"Unsupported response language: {language!r}") from None


def build_context(passages: Sequence[str]) -> str:
    return CONTEXT_SEPARATOR.join(passages)


def build_grounded_system_prompt(context: str) -> str:
    return GROUNDED_SYSTEM_PROMPT + context
