"""
Ranking and Summarization Oracle

Selects and ranks candidate posts against the user's interests and writes
short summaries, through the Anthropic or OpenAI APIs. Both calls fail as a
single OracleError; nothing is retried here.
"""

import json
import logging
import sys
import time
from dataclasses import dataclass
from typing import Optional

from anthropic import Anthropic
from openai import OpenAI

from apricot.config import Settings
from apricot.services.errors import OracleError

logger = logging.getLogger(__name__)


def _log_oracle(msg: str):
    """Log oracle progress with immediate flush."""
    full_msg = f"ORACLE: {msg}"
    logger.info(full_msg)
    print(full_msg, file=sys.stdout, flush=True)


# Configuration
MAX_TOKENS = 1024
ORACLE_TIMEOUT = 60  # seconds

RANK_SYSTEM_PROMPT = """You are a tech blog curator. Given the user's interests and a list of recent blog posts, select the {max_results} posts that best match the user's interests.
Return ONLY valid JSON: an array of objects with "id" (the post ID) and "reason" (one sentence explaining why this post matches).
Rank by relevance, most relevant first. If there are fewer than {max_results} posts, select all of them."""

SUMMARIZE_SYSTEM_PROMPT = """You are a technical writer. Summarize the following blog post in exactly 4-5 sentences.
Focus on: the problem being solved, the approach taken, key technical decisions, and the outcome or results.
Write for a senior engineer audience. Be specific about technologies and numbers mentioned in the post."""


@dataclass
class OracleEntry:
    """Post as presented to the oracle."""
    id: int
    title: str
    source: str
    published_at: str = ''
    description: str = ''
    full_content: str = ''


@dataclass
class RankingDecision:
    """One selected post and why it was selected."""
    post_id: int
    reason: str


def build_rank_prompt(preferences: str, entries: list[OracleEntry], max_results: int) -> tuple[str, str]:
    """Return (system prompt, user prompt) for ranking."""
    lines = ["User Preferences:", preferences, "", "Recent Blog Posts:"]
    for i, entry in enumerate(entries, start=1):
        lines.append(
            f"{i}. ID: {entry.id} | Title: {entry.title} | Source: {entry.source} | "
            f"Published: {entry.published_at} | Description: {entry.description}"
        )
    return RANK_SYSTEM_PROMPT.format(max_results=max_results), '\n'.join(lines)


def build_summarize_prompt(entry: OracleEntry) -> tuple[str, str]:
    """Return (system prompt, user prompt) for summarizing one post; full text preferred."""
    content = entry.full_content or entry.description
    user_prompt = f"Blog Title: {entry.title}\nBlog Source: {entry.source}\nBlog Content:\n{content}"
    return SUMMARIZE_SYSTEM_PROMPT, user_prompt


def extract_json(text: str) -> str:
    """Strip a markdown code fence (```json ... ``` or ``` ... ```) around JSON."""
    text = text.strip()
    for fence in ('```json', '```'):
        if text.startswith(fence):
            body = text[len(fence):]
            end = body.rfind('```')
            if end >= 0:
                body = body[:end]
            return body.strip()
    return text


def parse_ranking(text: str) -> list[RankingDecision]:
    """
    Parse the oracle's ranking reply.

    Raises:
        OracleError: If the reply is not a JSON array of {"id", "reason"} objects
    """
    try:
        parsed = json.loads(extract_json(text))
    except json.JSONDecodeError as e:
        raise OracleError(f"parsing ranking response JSON: {e}") from e

    if not isinstance(parsed, list):
        raise OracleError(f"ranking response is a {type(parsed).__name__}, expected a list")

    decisions = []
    for item in parsed:
        if not isinstance(item, dict):
            raise OracleError(f"ranking item is not an object: {item!r}")
        try:
            post_id = int(item['id'])
        except (KeyError, TypeError, ValueError) as e:
            raise OracleError(f"ranking item has no usable id: {item!r}") from e
        decisions.append(RankingDecision(post_id=post_id, reason=str(item.get('reason') or '')))
    return decisions


class Oracle:
    """
    Base for provider oracles.

    Subclasses implement _complete(system_prompt, user_prompt) -> text and
    may set last_usage to (input_tokens, output_tokens).
    """
    provider = ''

    def __init__(self, model: str):
        self.model = model
        self.last_usage: Optional[tuple[int, int]] = None

    def rank(self, preferences: str, entries: list[OracleEntry], max_results: int) -> list[RankingDecision]:
        """
        Select and order the posts that best match preferences.

        Returns:
            Decisions ordered most relevant first (may exceed max_results)

        Raises:
            OracleError: On any API or parse failure
        """
        system_prompt, user_prompt = build_rank_prompt(preferences, entries, max_results)
        _log_oracle(f"Ranking {len(entries)} posts with {self.provider}/{self.model}...")
        text = self._call('rank', system_prompt, user_prompt)
        decisions = parse_ranking(text)
        _log_oracle(f"Ranking returned {len(decisions)} decisions")
        return decisions

    def summarize(self, entry: OracleEntry) -> str:
        """
        Summarize one post.

        Raises:
            OracleError: On any API failure or an empty reply
        """
        system_prompt, user_prompt = build_summarize_prompt(entry)
        text = self._call('summarize', system_prompt, user_prompt).strip()
        if not text:
            raise OracleError(f"{self.provider} summarize: empty response")
        return text

    def _call(self, operation: str, system_prompt: str, user_prompt: str) -> str:
        api_start = time.time()
        self.last_usage = None
        try:
            text = self._complete(system_prompt, user_prompt)
        except OracleError:
            raise
        except Exception as e:
            logger.error(f"{self.provider} {operation} failed: {e}")
            raise OracleError(f"{self.provider} {operation}: {e}") from e
        usage = f", {self.last_usage[0]}+{self.last_usage[1]} tokens" if self.last_usage else ""
        _log_oracle(f"{self.provider} {operation} responded in {time.time() - api_start:.1f}s{usage}")
        return text

    def _complete(self, system_prompt: str, user_prompt: str) -> str:
        raise NotImplementedError


class AnthropicOracle(Oracle):
    """Oracle backed by the Anthropic Messages API."""
    provider = 'anthropic'

    def __init__(self, api_key: str, model: str, client=None):
        super().__init__(model)
        self._client = client or Anthropic(api_key=api_key, timeout=ORACLE_TIMEOUT, max_retries=0)

    def _complete(self, system_prompt: str, user_prompt: str) -> str:
        response = self._client.messages.create(
            model=self.model,
            max_tokens=MAX_TOKENS,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )
        if response.usage is not None:
            self.last_usage = (response.usage.input_tokens, response.usage.output_tokens)
        if not response.content:
            raise OracleError("anthropic: empty response, no content blocks returned")
        return response.content[0].text


class OpenAIOracle(Oracle):
    """Oracle backed by the OpenAI Chat Completions API."""
    provider = 'openai'

    def __init__(self, api_key: str, model: str, client=None):
        super().__init__(model)
        self._client = client or OpenAI(api_key=api_key, timeout=ORACLE_TIMEOUT, max_retries=0)

    def _complete(self, system_prompt: str, user_prompt: str) -> str:
        response = self._client.chat.completions.create(
            model=self.model,
            max_completion_tokens=MAX_TOKENS,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        )
        if response.usage is not None:
            self.last_usage = (response.usage.prompt_tokens, response.usage.completion_tokens)
        if not response.choices:
            raise OracleError("openai: empty response, no choices returned")
        return response.choices[0].message.content or ''


ORACLE_CLASSES = {
    'anthropic': AnthropicOracle,
    'openai': OpenAIOracle,
}


def create_oracle(settings: Settings) -> Optional[Oracle]:
    """
    Build the configured oracle.

    Returns:
        Oracle instance, or None when no API key is configured
    """
    if not settings.oracle_configured:
        return None
    oracle_cls = ORACLE_CLASSES.get(settings.ai_provider)
    if oracle_cls is None:
        raise ValueError(f"unsupported AI provider: {settings.ai_provider}")
    return oracle_cls(api_key=settings.ai_api_key, model=settings.ai_model)
