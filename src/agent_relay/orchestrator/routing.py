"""Resolution of requested backend candidate ids to configured endpoints."""

from __future__ import annotations

from collections.abc import Sequence

from agent_relay.config import BackendSettings
from agent_relay.orchestrator.backend.base import BackendCandidate
from agent_relay.orchestrator.contracts import ConfigurationError


def resolve_candidates(
    requested_ids: Sequence[str] | None,
    settings: BackendSettings,
) -> list[BackendCandidate]:
    """Return the ordered, de-duplicated candidate list for one run.

    An empty request means every configured endpoint, in configuration order.
    """

    if not settings.api_key:
        raise ConfigurationError(
            "Backend API key is not configured. Set AGENT_RELAY_API_KEY.",
        )
    configured = {endpoint.candidate_id: endpoint for endpoint in settings.endpoints}
    if not configured:
        raise ConfigurationError("No backend endpoints are configured.")

    ids = [_normalize_candidate_id(value) for value in requested_ids or ()]
    if not ids:
        ids = list(configured)

    unknown = [candidate_id for candidate_id in ids if candidate_id not in configured]
    if unknown:
        raise ConfigurationError(
            f"Unknown backend candidates: {unknown}. Configured: {sorted(configured)}",
        )

    candidates: list[BackendCandidate] = []
    seen: set[str] = set()
    for candidate_id in ids:
        if candidate_id in seen:
            continue
        seen.add(candidate_id)
        endpoint = configured[candidate_id]
        candidates.append(
            BackendCandidate(
                candidate_id=endpoint.candidate_id,
                url=endpoint.url,
                api_key=settings.api_key,
            ),
        )
    return candidates


def _normalize_candidate_id(value: str) -> str:
    normalized = value.strip().lower()
    if not normalized:
        raise ConfigurationError("Backend candidate id must be a non-empty string.")
    return normalized
