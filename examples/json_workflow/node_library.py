"""
Node library: application-specific executors.

These executors are defined in code and referenced by type name from JSON
pipeline definitions (e.g. produced by the visual editor).
"""

import re
from typing import Any

from promptdag import BaseExecutor, ExecutorContext, Node
from promptdag.executors import extract_text

POSITIVE = {"good", "great", "excellent", "love", "fast", "helpful"}
NEGATIVE = {"bad", "slow", "broken", "hate", "confusing", "useless"}


class SentimentExecutor(BaseExecutor):
    """Scores upstream text against small positive and negative word lists."""

    node_type = "sentiment"
    category = "Processing"
    description = "Keyword sentiment score for the upstream text"

    async def run(self, node: Node, context: ExecutorContext) -> dict[str, Any]:
        words = re.findall(r"[a-z']+", extract_text(context.input_data).lower())
        positive = sum(1 for w in words if w in POSITIVE)
        negative = sum(1 for w in words if w in NEGATIVE)
        context.logger.info("Scored %d words (+%d/-%d)", len(words), positive, negative)

        label = "neutral"
        if positive > negative:
            label = "positive"
        elif negative > positive:
            label = "negative"
        return {
            "processedData": {"label": label, "positive": positive, "negative": negative},
        }


class WordCountExecutor(BaseExecutor):
    """Counts words in the upstream text."""

    node_type = "word-count"
    category = "Processing"
    description = "Number of words in the upstream text"

    async def run(self, node: Node, context: ExecutorContext) -> dict[str, Any]:
        return {"wordCount": len(extract_text(context.input_data).split())}


EXECUTORS = [SentimentExecutor(), WordCountExecutor()]
