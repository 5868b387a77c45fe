"""Abstract and keyword generation for processed documents.

Both are best-effort: a failed call is logged and the pipeline carries on
without the field.
"""

import json
import logging
from typing import List, Optional, Sequence

from openai import AsyncOpenAI, OpenAIError

logger = logging.getLogger(__name__)

ABSTRACT_CHUNK_LIMIT = 30


def _joined(chunks: Sequence[str], max_chars: int) -> str:
    text = "\n\n".join(chunks[:ABSTRACT_CHUNK_LIMIT])
    return text[:max_chars]


async def generate_abstract(
    client: AsyncOpenAI,
    chunks: Sequence[str],
    title: str,
    *,
    model: str = "gpt-4o-mini",
    max_chars: int = 20000,
) -> Optional[str]:
    """~100 word summary of the opening chunks."""
    if not chunks:
        return None
    try:
        response = await client.chat.completions.create(
            model=model,
            messages=[
                {
                    "role": "system",
                    "content": "You write concise, factual 100-word abstracts of documents.",
                },
                {
                    "role": "user",
                    "content": f"Document title: {title}\n\nWrite a 100-word abstract of:\n\n"
                               f"{_joined(chunks, max_chars)}",
                },
            ],
            temperature=0.7,
            max_tokens=200,
        )
    except OpenAIError as e:
        logger.warning("Abstract generation failed for '%s': %s", title, e)
        return None

    abstract = (response.choices[0].message.content or "").strip()
    return abstract or None


async def generate_keywords(
    client: AsyncOpenAI,
    chunks: Sequence[str],
    title: str,
    *,
    model: str = "gpt-4o-mini",
    max_chars: int = 20000,
    limit: int = 10,
) -> List[str]:
    if not chunks:
        return []
    try:
        response = await client.chat.completions.create(
            model=model,
            messages=[
                {
                    "role": "system",
                    "content": "Return a JSON array of short search keywords. No prose.",
                },
                {
                    "role": "user",
                    "content": f"Up to {limit} keywords for '{title}':\n\n{_joined(chunks, max_chars)}",
                },
            ],
            temperature=0.2,
            max_tokens=150,
        )
    except OpenAIError as e:
        logger.warning("Keyword generation failed for '%s': %s", title, e)
        return []

    raw = (response.choices[0].message.content or "").strip()
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        parsed = [part.strip(" -•\"'") for part in raw.replace("\n", ",").split(",")]
    if not isinstance(parsed, list):
        return []
    return [str(k).strip() for k in parsed if str(k).strip()][:limit]
