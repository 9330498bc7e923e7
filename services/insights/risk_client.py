from __future__ import annotations

import logging
from typing import Protocol

import httpx
from pydantic import ValidationError

from shared.contracts.enums import RiskLevel
from shared.contracts.models import PredictionFeatures, RiskPrediction

logger = logging.getLogger(__name__)

UNAVAILABLE_PREDICTION = RiskPrediction(
    summary="Prediction unavailable.",
    risk_level=RiskLevel.UNKNOWN,
    proactive_nudge=None,
)
INSUFFICIENT_DATA_PREDICTION = RiskPrediction(
    summary="Not enough data for an accurate prediction. Keep logging your doses!",
    risk_level=RiskLevel.LOW,
    proactive_nudge=None,
)


class RiskScorer(Protocol):
    def score(self, features: PredictionFeatures) -> RiskPrediction: ...


class UnavailableRiskScorer:
    """Scorer used when no risk scoring service is configured."""

    def score(self, features: PredictionFeatures) -> RiskPrediction:
        return UNAVAILABLE_PREDICTION.model_copy()


class HttpRiskScorer:
    def __init__(self, url: str, timeout: float = 10.0, client: httpx.Client | None = None) -> None:
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

    def score(self, features: PredictionFeatures) -> RiskPrediction:
        payload = {
            "features": features.model_dump(mode="json", exclude={"upcoming_dose"}),
            "upcoming_dose": features.upcoming_dose.model_dump(mode="json"),
        }
        try:
            response = self.client.post(self.url, json=payload)
            response.raise_for_status()
            return RiskPrediction.model_validate(response.json())
        except httpx.HTTPError as exc:
            logger.warning("Risk scorer request failed: %s", exc)
        except (ValidationError, ValueError) as exc:
            logger.warning("Risk scorer returned a malformed response: %s", exc)
        return UNAVAILABLE_PREDICTION.model_copy()

    def close(self) -> None:
        self.client.close()


def predict_adherence_risk(scorer: RiskScorer, features: PredictionFeatures) -> RiskPrediction:
    """Score ``features``, never raising to the caller."""
    if not features.sufficient_data:
        return INSUFFICIENT_DATA_PREDICTION.model_copy()
    try:
        return scorer.score(features)
    except Exception:
        logger.exception("Risk scoring failed for dose %s", features.upcoming_dose.dose_id)
        return UNAVAILABLE_PREDICTION.model_copy()
