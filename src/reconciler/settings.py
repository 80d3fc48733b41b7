"""Reconciler configuration settings.

ReconcilerSettings is the single configuration object for building a
provider client and orchestrators. It is intentionally a plain dataclass
(not env-coupled) so tests can inject config without touching os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from reconciler.provisioning.workflow import OperationTimeouts


@dataclass(frozen=True, slots=True)
class ReconcilerSettings:
    """Configuration for the reconciliation engine.

    All fields have sensible defaults for local development.
    Non-local environments must supply a real api_token.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    # ── Provider API ───────────────────────────────────────────────
    api_base_url: str = "https://secure.sakura.ad.jp/cloud/zone/is1a/api/cloud/1.1"
    """Provider REST root, including the zone segment."""

    api_token: str = ""
    """Bearer token for provider API calls. Never log this."""

    default_zone: str = "is1a"
    """Zone used when a resource does not name one."""

    request_timeout_seconds: float = 300.0
    """Per-request HTTP timeout."""

    user_agent_suffix: str = ""
    """Appended to the User-Agent header of every provider call."""

    # ── Lifecycle budgets ──────────────────────────────────────────
    create_timeout_seconds: float = 60 * 60
    update_timeout_seconds: float = 60 * 60
    delete_timeout_seconds: float = 20 * 60

    settle_seconds: float = 10.0
    """Pause after publishing create/update state; 0 disables it."""

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    def operation_timeouts(self) -> OperationTimeouts:
        return OperationTimeouts(
            create_seconds=self.create_timeout_seconds,
            update_seconds=self.update_timeout_seconds,
            delete_seconds=self.delete_timeout_seconds,
        )

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if not self.is_local and not self.api_token:
            errors.append(f"{self.environment}: api_token is required")
        if not self.api_base_url.startswith(("http://", "https://")):
            errors.append("api_base_url must be an http(s) URL")
        for name in (
            "request_timeout_seconds",
            "create_timeout_seconds",
            "update_timeout_seconds",
            "delete_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name} must be > 0")
        if self.settle_seconds < 0:
            errors.append("settle_seconds must be >= 0")
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> ReconcilerSettings:
        """Build settings from environment variables.

        This is a convenience factory for production use. Tests should
        construct ReconcilerSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        defaults = cls()
        zone = env.get("PROVIDER_ZONE", defaults.default_zone)
        base_url = env.get(
            "PROVIDER_API_URL",
            f"https://secure.sakura.ad.jp/cloud/zone/{zone}/api/cloud/1.1",
        )

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            api_base_url=base_url,
            api_token=env.get("PROVIDER_API_TOKEN", ""),
            default_zone=zone,
            request_timeout_seconds=_float(
                env, "PROVIDER_REQUEST_TIMEOUT", defaults.request_timeout_seconds,
            ),
            user_agent_suffix=env.get("PROVIDER_APPEND_USER_AGENT", ""),
            create_timeout_seconds=_float(
                env, "RECONCILE_CREATE_TIMEOUT", defaults.create_timeout_seconds,
            ),
            update_timeout_seconds=_float(
                env, "RECONCILE_UPDATE_TIMEOUT", defaults.update_timeout_seconds,
            ),
            delete_timeout_seconds=_float(
                env, "RECONCILE_DELETE_TIMEOUT", defaults.delete_timeout_seconds,
            ),
            settle_seconds=_float(
                env, "RECONCILE_SETTLE_SECONDS", defaults.settle_seconds,
            ),
        )


def _float(env: dict[str, str], key: str, default: float) -> float:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None
