"""YubiKey touch detection state machine.

The machine is fed one ``CardProbeResult`` per completed probe and returns a
``Transition`` describing what changed and which side effects the caller must
perform. Side effects are attached only to the transition that enters a state,
so a result repeated while the state persists never re-triggers them.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class CardProbeResult(str, Enum):
    NORMAL = "normal"
    TOUCH = "touch"
    NO_CARD = "no_card"
    ERROR = "error"


class AgentState(str, Enum):
    NORMAL = "normal"
    TOUCH = "touch"
    NO_CARD = "no_card"
    ERROR = "error"
    STOPPED = "stopped"


class Effect(str, Enum):
    CLEAR = "clear"
    NOTIFY_TOUCH = "notify_touch"
    INDICATE = "indicate"
    RESTART = "restart"
    MANUAL_RESTART_REQUIRED = "manual_restart_required"


@dataclass(slots=True)
class Transition:
    previous: AgentState
    current: AgentState
    effects: tuple[Effect, ...] = ()
    message: str = ""

    @property
    def entered(self) -> bool:
        return self.previous != self.current


@dataclass(slots=True)
class RecoveryPolicy:
    touch_timeout: float = 30.0
    unresponsive_window: float = 60.0
    max_auto_restarts: int = 3


class TouchStateMachine:
    def __init__(self, policy: RecoveryPolicy | None = None):
        self.policy = policy or RecoveryPolicy()
        self.state = AgentState.NORMAL
        self.touch_started_at: float | None = None
        self.failing_since: float | None = None
        self.responded_since_restart = False
        self.auto_restarts = 0
        self.manual_restart_required = False

    def touch_elapsed(self, now: float) -> float:
        if self.touch_started_at is None:
            return 0.0
        return now - self.touch_started_at

    def check_touch_timeout(self, now: float) -> Transition | None:
        if self.state is not AgentState.TOUCH or self.touch_started_at is None:
            return None
        elapsed = self.touch_elapsed(now)
        if elapsed <= self.policy.touch_timeout:
            return None
        self.state = AgentState.NORMAL
        self.touch_started_at = None
        return Transition(
            AgentState.TOUCH,
            AgentState.NORMAL,
            (Effect.CLEAR,),
            f"touch wait timed out after {elapsed:.0f}s, treating as stale",
        )

    def _mark_responsive(self) -> None:
        self.responded_since_restart = True
        self.failing_since = None
        self.auto_restarts = 0
        self.manual_restart_required = False

    def _recovery_effect(self) -> Effect | None:
        if self.manual_restart_required:
            return None
        if self.auto_restarts >= self.policy.max_auto_restarts:
            self.manual_restart_required = True
            return Effect.MANUAL_RESTART_REQUIRED
        self.auto_restarts += 1
        return Effect.RESTART

    def on_probe(self, result: CardProbeResult, now: float) -> Transition:
        prev = self.state
        if prev is AgentState.STOPPED:
            return Transition(prev, prev, (), "probe ignored while stopped")

        timed_out = self.check_touch_timeout(now)
        if timed_out is not None:
            return timed_out

        if result is CardProbeResult.NORMAL:
            self._mark_responsive()
            self.touch_started_at = None
            self.state = AgentState.NORMAL
            if prev is AgentState.NORMAL:
                return Transition(prev, prev)
            return Transition(prev, AgentState.NORMAL, (Effect.CLEAR,), f"recovered from {prev.value}")

        if result is CardProbeResult.TOUCH:
            if prev is AgentState.TOUCH:
                return Transition(prev, prev, (), f"waiting for touch ({self.touch_elapsed(now):.0f}s)")
            self.state = AgentState.TOUCH
            self.touch_started_at = now
            return Transition(prev, AgentState.TOUCH, (Effect.NOTIFY_TOUCH,), "touch required")

        self.touch_started_at = None

        if result is CardProbeResult.NO_CARD:
            # The agent answered; only the card is missing.
            self._mark_responsive()
            if prev is AgentState.NO_CARD:
                return Transition(prev, prev)
            self.state = AgentState.NO_CARD
            return Transition(prev, AgentState.NO_CARD, (Effect.INDICATE,), "no card present")

        if prev is not AgentState.ERROR:
            self.state = AgentState.ERROR
            self.failing_since = now
            effect = self._recovery_effect()
            return Transition(prev, AgentState.ERROR, (effect or Effect.INDICATE,), "card status probe failed")

        if (
            not self.responded_since_restart
            and self.failing_since is not None
            and now - self.failing_since >= self.policy.unresponsive_window
        ):
            self.failing_since = now
            effect = self._recovery_effect()
            if effect is not None:
                return Transition(
                    prev,
                    prev,
                    (effect,),
                    f"agent unresponsive for {self.policy.unresponsive_window:.0f}s",
                )
        return Transition(prev, prev)

    def on_stop(self) -> Transition:
        prev = self.state
        self.state = AgentState.STOPPED
        self.touch_started_at = None
        self.failing_since = None
        return Transition(prev, AgentState.STOPPED, (Effect.INDICATE,), "stopped by user")

    def on_user_restart(self) -> None:
        self.auto_restarts = 0
        self.manual_restart_required = False
        self.responded_since_restart = False

    def on_restart_finished(self, ok: bool, now: float) -> Transition:
        prev = self.state
        self.responded_since_restart = False
        self.touch_started_at = None
        if not ok:
            self.state = AgentState.ERROR
            self.failing_since = now
            return Transition(prev, AgentState.ERROR, (Effect.INDICATE,), "restart failed")
        if prev in (AgentState.STOPPED, AgentState.TOUCH):
            self.state = AgentState.NORMAL
        self.failing_since = now if self.state is AgentState.ERROR else None
        return Transition(prev, self.state, (Effect.INDICATE,), "restart finished")
