import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Optional, Sequence

from groq import Groq
from loguru import logger

from yield_ledger.models import AccountSummary, PlanDefinition

FALLBACK_INSIGHT = (
    "The market looks stable. Consider diversifying your yield strategies "
    "with our Pro and Elite plans for maximum passive returns."
)

SYSTEM_PROMPT = """You are an investment assistant for a USDT yield platform.
Given a user's balances and the plans currently on offer, give a concise,
encouraging recommendation (under 100 words) on which plan they should
consider next, or whether they should save up first.

Reply with plain text only, no markdown."""


class ExternalServiceError(Exception):
    pass


def build_prompt(summary: AccountSummary, plans: Sequence[PlanDefinition]) -> str:
    lines = [
        "User profile:",
        f"- Available balance: {summary.available} USDT",
        f"- Locked (active) balance: {summary.locked} USDT",
        f"- Active plans: {summary.active_holdings}",
        f"- Daily interest: {summary.daily_interest} USDT",
        "",
        "Available investment plans:",
    ]
    for plan in plans:
        lines.append(
            f"- {plan.name}: cost {plan.price} USDT, daily interest "
            f"{plan.daily_interest_rate}%, duration {plan.duration_days} days"
        )
    return "\n".join(lines)


class InsightService:
    """Dashboard advice from a Groq-hosted model.

    Never raises: a missing key, a network error, a timeout or an empty reply
    all resolve to ``FALLBACK_INSIGHT``. ``cached_insight`` never waits on the
    model: it returns the last good reply for the key and refreshes it on a
    worker thread.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "llama-3.3-70b-versatile",
        timeout: float = 5.0,
        client=None,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.client = client
        if self.client is None and self.api_key:
            self.client = Groq(api_key=self.api_key, timeout=timeout, max_retries=0)
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="insight")
        self._lock = threading.Lock()
        self._cache: dict[str, str] = {}
        self._refreshing: dict[str, Future] = {}

    @classmethod
    def from_settings(cls, settings) -> "InsightService":
        return cls(
            api_key=settings.groq_api_key,
            model=settings.advisory_model,
            timeout=settings.advisory_timeout_seconds,
        )

    @property
    def is_available(self) -> bool:
        return self.client is not None

    def get_insight(self, summary: AccountSummary, plans: Sequence[PlanDefinition]) -> str:
        if not self.client:
            return FALLBACK_INSIGHT

        prompt = build_prompt(summary, plans)
        future = self._executor.submit(self._ask, prompt)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            # The worker keeps running; its result is discarded.
            future.cancel()
            logger.warning(f"Insight request timed out after {self.timeout}s")
        except Exception as e:
            logger.warning(f"Insight request failed: {e}")
        return FALLBACK_INSIGHT

    def cached_insight(self, key: str, summary: AccountSummary, plans: Sequence[PlanDefinition]) -> str:
        if not self.client:
            return FALLBACK_INSIGHT
        self.refresh(key, summary, plans)
        with self._lock:
            return self._cache.get(key, FALLBACK_INSIGHT)

    def refresh(self, key: str, summary: AccountSummary, plans: Sequence[PlanDefinition]) -> Optional[Future]:
        """Start (or join) a background refresh of ``key``'s cached insight."""
        if not self.client:
            return None
        with self._lock:
            future = self._refreshing.get(key)
            if future is None:
                future = self._executor.submit(self._refresh, key, build_prompt(summary, plans))
                self._refreshing[key] = future
        return future

    def _refresh(self, key: str, prompt: str) -> str:
        try:
            text = self._ask(prompt)
        except Exception as e:
            logger.warning(f"Background insight refresh for {key} failed: {e}")
            text = None
        with self._lock:
            if text:
                self._cache[key] = text
            self._refreshing.pop(key, None)
        return text or FALLBACK_INSIGHT

    def _ask(self, prompt: str) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=0.4,
                max_tokens=256,
            )
        except Exception as e:
            raise ExternalServiceError(f"Groq error: {e}") from e

        text = (response.choices[0].message.content or "").strip() if response.choices else ""
        if not text:
            raise ExternalServiceError("Empty insight from model")
        return text

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
