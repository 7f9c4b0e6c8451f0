from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .models import AutomationMode


@dataclass(frozen=True)
class AutopilotSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "autopilot_state"
    account_id: str = "default"
    poll_interval_seconds: float = 5.0
    minutes_per_product: int = 1
    analysis_model: str = "gpt-4o-mini"
    default_mode: str = "review"

    @classmethod
    def from_env(cls) -> "AutopilotSettings":
        return cls(
            state_store_root=os.getenv("AUTOPILOT_STATE_STORE_ROOT", "autopilot_state"),
            account_id=os.getenv("AUTOPILOT_ACCOUNT_ID", "default"),
            poll_interval_seconds=_get_env_float("AUTOPILOT_POLL_INTERVAL_SECONDS", default=5.0, minimum=0.05),
            minutes_per_product=_get_env_int("AUTOPILOT_MINUTES_PER_PRODUCT", default=1, minimum=0, maximum=1_440),
            analysis_model=os.getenv("AUTOPILOT_ANALYSIS_MODEL", "gpt-4o-mini"),
            default_mode=os.getenv("AUTOPILOT_DEFAULT_MODE", "review"),
        ).normalized()

    def normalized(self) -> "AutopilotSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if not self.state_store_root.strip():
            raise ValueError("AUTOPILOT_STATE_STORE_ROOT must be non-empty")
        account_id = self.account_id.strip()
        if not account_id:
            raise ValueError("AUTOPILOT_ACCOUNT_ID must be non-empty")
        analysis_model = self.analysis_model.strip()
        if not analysis_model:
            raise ValueError("AUTOPILOT_ANALYSIS_MODEL must be non-empty")
        if self.poll_interval_seconds <= 0:
            raise ValueError(f"AUTOPILOT_POLL_INTERVAL_SECONDS must be > 0, got: {self.poll_interval_seconds}")

        default_mode = self.default_mode.strip().lower()
        if default_mode not in {AutomationMode.REVIEW.value, AutomationMode.AUTO.value}:
            raise ValueError("AUTOPILOT_DEFAULT_MODE must be one of: review, auto")

        return AutopilotSettings(
            state_store_root=self.state_store_root,
            account_id=account_id,
            poll_interval_seconds=self.poll_interval_seconds,
            minutes_per_product=self.minutes_per_product,
            analysis_model=analysis_model,
            default_mode=default_mode,
        )

    @property
    def default_automation_mode(self) -> AutomationMode:
        return AutomationMode(self.default_mode)

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 86_400.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed
