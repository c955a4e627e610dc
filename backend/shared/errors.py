"""
Error taxonomy shared by resolution, aggregation, lifecycle and sync.

Callers catch the narrowest class they can act on:
  ValidationError:        bad input, never retried
  ResolutionError:        team lookup produced no usable answer (queued for review)
  ProviderFetchFailure:   upstream unavailable; retried, then degraded to an empty contribution
  PersistenceConflict:    optimistic write lost a race; re-read and recompute
  LayerEvaluationFailure: one match could not be evaluated; isolated from the rest of the run
"""
from __future__ import annotations

from typing import Any


class FixtureHubError(Exception):
    """Base class for all domain errors."""


class ValidationError(FixtureHubError):
    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class ResolutionError(FixtureHubError):
    """Team resolution found no single acceptable candidate."""

    def __init__(self, provider: str, raw_name: str, message: str) -> None:
        self.provider = provider
        self.raw_name = raw_name
        super().__init__(message)


class NoMatchFound(ResolutionError):
    def __init__(
        self,
        provider: str,
        raw_name: str,
        best_team_id: int | None = None,
        best_score: float | None = None,
    ) -> None:
        self.best_team_id = best_team_id
        self.best_score = best_score
        detail = ""
        if best_team_id is not None:
            detail = f" (best candidate team {best_team_id} at {best_score:.2f})"
        super().__init__(provider, raw_name, f"No team match for {provider}:{raw_name!r}{detail}")


class AmbiguousMatch(ResolutionError):
    def __init__(
        self, provider: str, raw_name: str, candidates: list[tuple[int, float]]
    ) -> None:
        self.candidates = candidates
        ids = ", ".join(f"{team_id}@{score:.2f}" for team_id, score in candidates)
        super().__init__(provider, raw_name, f"Ambiguous team match for {provider}:{raw_name!r}: {ids}")


class ProviderFetchFailure(FixtureHubError):
    def __init__(self, provider: str, reason: str, retryable: bool = True) -> None:
        self.provider = provider
        self.reason = reason
        self.retryable = retryable
        super().__init__(f"Provider {provider} fetch failed: {reason}")


class PersistenceConflict(FixtureHubError):
    def __init__(self, event_id: str, expected_version: int | None) -> None:
        self.event_id = event_id
        self.expected_version = expected_version
        super().__init__(f"Version conflict on match {event_id} (expected {expected_version})")


class LayerEvaluationFailure(FixtureHubError):
    def __init__(self, event_id: str, layer: str, reason: str, evidence: dict[str, Any] | None = None) -> None:
        self.event_id = event_id
        self.layer = layer
        self.reason = reason
        self.evidence = evidence or {}
        super().__init__(f"Layer {layer} failed for match {event_id}: {reason}")


class MatchNotFound(FixtureHubError):
    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Match {event_id} not found")
