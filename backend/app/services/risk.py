"""Risk input normalisation and overall risk assessment.

Each sampled metric is stored as one risk input per parcel with a 0-100
normalised score. The overall assessment is the mean of the hazard-class
scores (flood, drought, sea level) mapped to a risk band.

Example:
    >>> from app.db import database
    >>> from app.services.risk import RiskAssessmentEngine
    >>> engine = RiskAssessmentEngine(database.InMemoryRiskRepository())
    >>> _ = engine.upsert_risk_input("p-1", "flood_risk", 75)
    >>> engine.compute_overall_assessment("p-1").risk_band
    'HIGH'
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from app.db import models as db_models

if TYPE_CHECKING:
    from app.db import database

logger = logging.getLogger(__name__)

METHODOLOGY_VERSION = "auto-ingest-v1"

# Risk metric -> key under which its raw value is reported in drivers.
DRIVER_KEYS: dict[str, str] = {
    "elevation": "elevation_meters",
    "slope": "slope_degrees",
    "flood_risk": "flood_risk",
    "drought_risk": "drought_risk",
    "sea_level_risk": "sea_level_risk",
}


def normalize_risk_score(metric: str, value: float) -> float | None:
    """Map a raw metric value onto a 0-100 risk score.

    Args:
        metric: Risk metric name.
        value: Raw measured value.

    Returns:
        Normalised score, or ``None`` for an unknown metric.
    """
    if metric == "elevation":
        return 80.0 if value < 50 else 40.0 if value < 200 else 15.0
    if metric == "slope":
        return 60.0 if value > 12 else 30.0 if value > 5 else 10.0
    if metric in db_models.HAZARD_METRICS:
        return float(value)
    return None


def risk_band(score: float) -> db_models.RiskBand:
    if score >= 70:
        return "HIGH"
    if score >= 40:
        return "MODERATE"
    return "LOW"


class RiskAssessmentEngine:
    """Maintain risk inputs and derive assessments for parcels.

    Attributes:
        repository: Store for risk inputs and assessments.
    """

    def __init__(self, repository: database.RiskRepositoryProtocol) -> None:
        self.repository = repository

    def upsert_risk_input(
        self,
        parcel_id: str,
        metric: str,
        value: float,
        weight: float | None = None,
        data_source: str | None = None,
        actor: str = "system",
    ) -> db_models.RiskInput:
        """Create or update the risk input for a (parcel, metric) pair.

        Value, normalised score and evaluation time are always overwritten.
        The weight is kept unless supplied; the data source is replaced only
        when supplied.
        """
        return self.repository.upsert_risk_input(
            parcel_id=parcel_id,
            metric=metric,
            value=value,
            normalized_score=normalize_risk_score(metric, value),
            weight=weight,
            data_source=data_source,
            updated_by=actor,
        )

    def compute_overall_assessment(
        self,
        parcel_id: str,
        actor: str = "system",
    ) -> db_models.RiskAssessment | None:
        """Aggregate current hazard scores into a new assessment.

        Args:
            parcel_id: Parcel to assess.
            actor: Recorded as the assessment's creator.

        Returns:
            The stored assessment, or ``None`` when the parcel has no
            hazard-class input with a score (nothing is written then).
        """
        inputs = {
            record.metric: record
            for record in self.repository.list_risk_inputs(parcel_id)
        }
        scores = [
            inputs[metric].normalized_score
            for metric in db_models.HAZARD_METRICS
            if metric in inputs and inputs[metric].normalized_score is not None
        ]
        if not scores:
            logger.debug("No hazard scores for parcel %s", parcel_id)
            return None

        overall = round(sum(scores) / len(scores), 2)  # type: ignore[arg-type]
        drivers = {
            key: inputs[metric].value
            for metric, key in DRIVER_KEYS.items()
            if metric in inputs and inputs[metric].value is not None
        }
        assessment = db_models.RiskAssessment(
            parcel_id=parcel_id,
            overall_score=overall,
            risk_band=risk_band(overall),
            drivers=drivers,
            methodology_version=METHODOLOGY_VERSION,
            created_by=actor,
        )
        self.repository.add_assessment(assessment)
        logger.info(
            "Parcel %s assessed %s (%.2f)",
            parcel_id,
            assessment.risk_band,
            overall,
        )
        return assessment

    def latest_assessment(
        self, parcel_id: str
    ) -> db_models.RiskAssessment | None:
        assessments = self.repository.list_assessments(parcel_id)
        return assessments[0] if assessments else None

    def risk_inputs(self, parcel_id: str) -> list[db_models.RiskInput]:
        return self.repository.list_risk_inputs(parcel_id)
