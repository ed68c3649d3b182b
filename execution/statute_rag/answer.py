"""
Grounded Answer Generation

Read path consumer: retrieve the top-k chunks for a question and ask a chat
model to answer from those chunks only.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional

from .similarity import Retriever, SearchResult

logger = logging.getLogger(__name__)

NO_CONTEXT_TEXT = "No relevant information found in the legal database."

SYSTEM_PROMPT_TEMPLATE = """You are a RAG AI assistant that answers questions based only on the provided legal context.

CONTEXT FROM LEGAL DATABASE:
{context}

RULES:
- Only answer based on the context provided above
- If no context is provided, state that you don't have information on that topic
- Reference the legal sections when answering
- Be precise and cite the relevant legal text"""

GENERATION_FAILED_TEXT = "I found relevant information but couldn't generate a summary. See sources below."


class TextGenerationService:
    """
    Chat-completions client (OpenAI or any OpenAI-compatible endpoint).

    The client is created on first use so constructing the service never
    needs network access or an API key.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        temperature: float = 0.2,
        max_tokens: int = 1500,
        timeout: float = 120.0,
    ):
        self.model = model
        self.base_url = base_url
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        """Get or create cached OpenAI client."""
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(
                base_url=self.base_url,
                api_key=self.api_key or os.getenv("OPENAI_API_KEY"),
                timeout=self.timeout,
            )
        return self._client

    def complete(self, system_prompt: str, user_message: str) -> str:
        response = self._get_client().chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        return response.choices[0].message.content or ""


@dataclass
class Answer:
    question: str
    text: str
    sources: list[SearchResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "question": self.question,
            "answer": self.text,
            "sources": [s.to_dict() for s in self.sources],
        }


def build_context(results: list[SearchResult]) -> str:
    """Number the retrieved chunks as [1], [2], ... for citation."""
    return "\n\n".join(f"[{i + 1}] {r.chunk.text}" for i, r in enumerate(results))


class AnswerGenerator:
    """Retrieves supporting chunks and generates an answer grounded in them."""

    def __init__(self, retriever: Retriever, generator: TextGenerationService, top_k: int = 5):
        self.retriever = retriever
        self.generator = generator
        self.top_k = top_k

    def answer(self, question: str) -> Answer:
        results = self.retriever.retrieve(question, self.top_k)
        system_prompt = SYSTEM_PROMPT_TEMPLATE.format(context=build_context(results) or NO_CONTEXT_TEXT)

        try:
            text = self.generator.complete(system_prompt, question)
        except Exception as e:
            logger.error(f"LLM generation failed: {type(e).__name__}: {e}")
            text = GENERATION_FAILED_TEXT

        return Answer(question=question, text=text, sources=results)
