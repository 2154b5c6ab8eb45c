"""Pure decision engines: attribution, fraud rules, commission"""

from tracking_service.engine.attribution import attribute, resolve_model, resolve_window
from tracking_service.engine.commission import compute_payout
from tracking_service.engine.fraud import FraudCheckResult, FraudEngine, FraudHistory

__all__ = [
    "attribute",
    "resolve_model",
    "resolve_window",
    "compute_payout",
    "FraudCheckResult",
    "FraudEngine",
    "FraudHistory",
]
