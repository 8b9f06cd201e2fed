"""
Prompt construction for RAG.

Assembles fixed instructions, an optional organization preamble, the
retrieved chunks as numbered sources, recent conversation turns and the
user's question into one prompt, then trims it to a character budget.
Only the context part is ever trimmed; the question and the response
directive always survive intact at the end.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from django.conf import settings

from apps.indexing.chunker import Chunk

logger = logging.getLogger(__name__)

DEFAULT_MAX_PROMPT_TOKENS = 8000
CHARS_PER_TOKEN = 4
MAX_HISTORY_TURNS = 8  # last 4 user/assistant exchanges
MAX_TURN_CHARS = 500

TRUNCATION_MARKER = "\n\n[...context truncated...]\n\n"
QUESTION_HEADER = "## User Question:"
RESPONSE_HEADER = "## Your Response:"
RESPONSE_DIRECTIVE = (
    "Provide a comprehensive answer with code examples where applicable. "
    "Cite sources using [Source N] references."
)

SYSTEM_PROMPT = """You are an expert documentation assistant. Your role is to provide **accurate, detailed, and actionable** answers based on the documentation provided below.

## Instructions:
1. **Always base your answers on the provided documentation context.** If the context contains relevant information, use it thoroughly.
2. **Cite your sources** by referencing the numbered sections (e.g., [Source 1], [Source 2]) so the user knows where the information comes from.
3. **Include code examples** whenever the documentation provides them. Format code blocks with the appropriate language identifier (e.g., ```javascript, ```python, ```html, ```curl).
4. **Structure your response clearly** using headings, bullet points, and numbered steps where appropriate.
5. **If the answer is NOT in the provided context**, clearly state: "This information is not available in the current documentation." and then offer general guidance.
6. **Be thorough but concise.** Don't omit important details, but avoid unnecessary filler."""

NO_CONTEXT_NOTICE = (
    "> No matching documentation was found in the knowledge base. "
    "Answer from general knowledge and say that the documentation does not cover this question."
)


@dataclass
class ConversationTurn:
    """One message of a prior conversation."""
    role: str  # "user" or "assistant"
    text: str
    timestamp: Optional[datetime] = None


def _source_label(chunk: Chunk) -> str:
    return chunk.metadata.heading or f"Documentation Section {chunk.index + 1}"


class PromptAssembler:
    """Builds bounded-length RAG prompts."""

    def __init__(
        self,
        system_prompt: str = SYSTEM_PROMPT,
        max_history_turns: int = MAX_HISTORY_TURNS,
        max_turn_chars: int = MAX_TURN_CHARS,
        chars_per_token: int = CHARS_PER_TOKEN,
    ):
        self.system_prompt = system_prompt
        self.max_history_turns = max_history_turns
        self.max_turn_chars = max_turn_chars
        self.chars_per_token = chars_per_token

    def build_instructions(self, tenant_preamble: Optional[str] = None) -> str:
        """Fixed instructions, followed by the organization preamble if any."""
        if tenant_preamble and tenant_preamble.strip():
            return (
                f"{self.system_prompt}\n\n"
                f"## Organization Guidelines:\n{tenant_preamble.strip()}"
            )
        return self.system_prompt

    def build_context_section(self, chunks: Sequence[Chunk]) -> str:
        """
        Render retrieved chunks as numbered sources.

        Format:
        ### [Source 1] Heading
        > URL: https://...

        chunk text
        """
        if not chunks:
            return f"\n\n{NO_CONTEXT_NOTICE}"

        blocks = []
        for i, chunk in enumerate(chunks, 1):
            url_line = f"\n> URL: {chunk.metadata.url}" if chunk.metadata.url else ""
            blocks.append(f"### [Source {i}] {_source_label(chunk)}{url_line}\n\n{chunk.text}")

        return (
            "\n\n---\n## Retrieved Documentation Context:\n\n"
            + "\n\n---\n\n".join(blocks)
            + "\n\n---"
        )

    def recent_turns(self, history: Sequence[ConversationTurn]) -> List[ConversationTurn]:
        """The last max_history_turns turns, oldest first."""
        turns = list(history)
        if turns and all(t.timestamp is not None for t in turns):
            turns.sort(key=lambda t: t.timestamp)
        if self.max_history_turns <= 0:
            return []
        return turns[-self.max_history_turns:]

    def build_history_section(self, history: Sequence[ConversationTurn]) -> str:
        turns = self.recent_turns(history)
        if not turns:
            return ""

        lines = []
        for turn in turns:
            speaker = "User" if turn.role == "user" else "Assistant"
            lines.append(f"**{speaker}:** {turn.text[:self.max_turn_chars]}")
        return "\n\n## Recent Conversation:\n" + "\n\n".join(lines)

    def build_question_section(self, query: str) -> str:
        return f"\n\n{QUESTION_HEADER}\n{query}\n\n{RESPONSE_HEADER}\n{RESPONSE_DIRECTIVE}"

    def build(
        self,
        query: str,
        chunks: Sequence[Chunk],
        history: Sequence[ConversationTurn] = (),
        tenant_preamble: Optional[str] = None,
        max_tokens: int = DEFAULT_MAX_PROMPT_TOKENS,
    ) -> str:
        """
        Build the complete prompt.

        Args:
            query: The user's question, rendered verbatim
            chunks: Retrieved chunks in rank order
            history: Prior conversation turns
            tenant_preamble: Organization-specific instructions
            max_tokens: Prompt budget; converted to characters at chars_per_token

        Returns:
            The prompt, at most max_tokens * chars_per_token characters unless
            the question section alone is longer than that
        """
        context = (
            self.build_instructions(tenant_preamble)
            + self.build_context_section(chunks)
            + self.build_history_section(history)
        )
        question = self.build_question_section(query)

        prompt = self.truncate(context, question, max_tokens)
        logger.debug(
            f"Prompt built: {len(prompt)} chars, {len(chunks)} sources, "
            f"{len(self.recent_turns(history))} history turns"
        )
        return prompt

    def truncate(self, context: str, question: str, max_tokens: int) -> str:
        """Cut the context so context + question fits the character budget."""
        max_chars = max(0, max_tokens) * self.chars_per_token
        if len(context) + len(question) <= max_chars:
            return context + question

        budget = max(0, max_chars - len(question) - len(TRUNCATION_MARKER))
        logger.warning(
            f"Prompt exceeds {max_chars} chars; truncating context "
            f"from {len(context)} to {budget} chars"
        )
        return context[:budget] + TRUNCATION_MARKER + question.lstrip("\n")

    @classmethod
    def from_settings(cls) -> "PromptAssembler":
        return cls(
            max_history_turns=getattr(settings, 'RAG_MAX_HISTORY_TURNS', MAX_HISTORY_TURNS),
            max_turn_chars=getattr(settings, 'RAG_MAX_TURN_CHARS', MAX_TURN_CHARS),
        )
