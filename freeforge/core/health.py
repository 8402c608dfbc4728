"""
Credential and model health tracking

Tracks failure streaks and cooldown windows for every credential in the pool
and every model identifier that has been tried. One tracker instance is meant
to be shared by all pipelines in a process; it does no locking and relies on
the single-threaded event loop for consistency. Replicas of the service each
learn health independently.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .config import Config

logger = logging.getLogger(__name__)


@dataclass
class CredentialState:
    """Health record for one credential"""
    exhausted: bool = False
    fail_streak: int = 0
    exhausted_at: Optional[float] = None


@dataclass
class ModelHealth:
    """Health record for one model identifier"""
    last_failure_at: float = 0.0
    consecutive_fails: int = 0


class HealthTracker:
    """Process-wide credential and model health state"""

    def __init__(
        self,
        credential_count: int,
        exhaust_threshold: int = 3,
        cooldown: float = 120.0,
        model_fail_threshold: int = 2,
        model_cooldown: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.exhaust_threshold = exhaust_threshold
        self.cooldown = cooldown
        self.model_fail_threshold = model_fail_threshold
        self.model_cooldown = model_cooldown
        self._clock = clock
        self._credentials: List[CredentialState] = [CredentialState() for _ in range(credential_count)]
        self._models: Dict[str, ModelHealth] = {}

    @classmethod
    def from_config(cls, config: Config, clock: Callable[[], float] = time.monotonic) -> 'HealthTracker':
        return cls(
            credential_count=len(config.api.api_keys),
            exhaust_threshold=config.health.exhaust_threshold,
            cooldown=config.health.credential_cooldown,
            model_fail_threshold=config.health.model_fail_threshold,
            model_cooldown=config.health.model_cooldown,
            clock=clock,
        )

    @property
    def credential_count(self) -> int:
        return len(self._credentials)

    # --- Credentials ---------------------------------------------------

    def is_credential_usable(self, index: int) -> bool:
        """True unless exhausted; an expired cooldown is cleared on read"""
        state = self._credentials[index]
        if not state.exhausted:
            return True
        if self._clock() - state.exhausted_at > self.cooldown:
            logger.info(f"🔓 Key #{index + 1} cooldown elapsed, back in rotation")
            self._reinstate(index)
            return True
        return False

    def usable_credentials(self) -> List[int]:
        return [i for i in range(len(self._credentials)) if self.is_credential_usable(i)]

    def next_usable_credential(self) -> Optional[int]:
        """First usable credential; with all exhausted, reinstate the least recently exhausted"""
        if not self._credentials:
            return None
        for i in range(len(self._credentials)):
            if self.is_credential_usable(i):
                return i

        oldest = min(range(len(self._credentials)), key=lambda i: self._credentials[i].exhausted_at)
        logger.warning(f"♻️ All keys exhausted, reinstating key #{oldest + 1}")
        self._reinstate(oldest)
        return oldest

    def record_failure(self, index: int):
        """Count a credential-exhausting failure against the key"""
        state = self._credentials[index]
        state.fail_streak += 1
        if state.fail_streak >= self.exhaust_threshold and not state.exhausted:
            state.exhausted = True
            state.exhausted_at = self._clock()
            logger.warning(f"🔒 Key #{index + 1} exhausted after {state.fail_streak} failures")

    def record_success(self, index: int):
        self._reinstate(index)

    def _reinstate(self, index: int):
        state = self._credentials[index]
        state.exhausted = False
        state.fail_streak = 0
        state.exhausted_at = None

    # --- Models ----------------------------------------------------------

    def model_healthy(self, model: str) -> bool:
        health = self._models.get(model)
        if health is None:
            return True
        if (health.consecutive_fails >= self.model_fail_threshold
                and self._clock() - health.last_failure_at < self.model_cooldown):
            return False
        return True

    def record_model_failure(self, model: str):
        health = self._models.setdefault(model, ModelHealth())
        health.last_failure_at = self._clock()
        health.consecutive_fails += 1
        if health.consecutive_fails == self.model_fail_threshold:
            logger.warning(f"🩺 Model {model} marked unhealthy after {health.consecutive_fails} consecutive failures")

    def record_model_success(self, model: str):
        self._models[model] = ModelHealth()

    def snapshot(self) -> Dict[str, object]:
        """Read-only view for status reporting; never includes key material"""
        now = self._clock()
        return {
            'credentials': [
                {
                    'key': f"#{i + 1}",
                    'usable': self.is_credential_usable(i),
                    'fail_streak': state.fail_streak,
                    'cooldown_remaining': max(0.0, self.cooldown - (now - state.exhausted_at)) if state.exhausted else 0.0,
                }
                for i, state in enumerate(self._credentials)
            ],
            'models': {
                model: {
                    'healthy': self.model_healthy(model),
                    'consecutive_fails': health.consecutive_fails,
                }
                for model, health in self._models.items()
            },
        }
