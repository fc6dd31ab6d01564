from typing import Dict, List, Sequence

from sqlalchemy.orm import Session

from quotagate.errors import UnknownProcessor
from quotagate.models import Feature, FeatureStatus, FeatureType


def _active_processors(db: Session):
    return db.query(Feature).filter(
        Feature.type == FeatureType.PROCESSOR,
        Feature.status == FeatureStatus.ACTIVE,
    )


def processor_weights(db: Session, names: Sequence[str]) -> Dict[str, int]:
    """Weights of the named processors. Inactive or missing names are rejected."""
    rows = _active_processors(db).filter(Feature.name.in_(list(names))).all()
    weights = {row.name: row.weight for row in rows}

    missing = set(names) - set(weights)
    if missing:
        raise UnknownProcessor(missing)
    return weights


def job_weight(db: Session, names: Sequence[str]) -> int:
    weights = processor_weights(db, names)
    return sum(weights[name] for name in names)


def list_processors(db: Session) -> List[Feature]:
    return _active_processors(db).order_by(Feature.name).all()
