"""
Job admission.

Checks run in a fixed order and stop at the first failure:

1. active subscription and current entitlement version
2. job weight from the catalog (unknown processors rejected)
3. processor count per job
4. weight per job
5. daily weight quota
6. source media duration and resolution
7. charge + job row, one transaction
8. publish to the worker queue

Failures in 1-6 leave no job row and no charge behind.
"""

import logging
from datetime import date
from typing import Any, Dict, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from quotagate import catalog, entitlements, ledger
from quotagate.dispatcher import Dispatcher
from quotagate.entitlements import Entitlement
from quotagate.errors import (
    ExceedsJobWeight, ExceedsMediaLimit, ExceedsProcessorCount, GateError, NotFound, QuotaExceeded,
)
from quotagate.jobs import JobStore
from quotagate.models import Job, MediaAsset

logger = logging.getLogger(__name__)

# Largest frame allowed per resolution tier
RESOLUTION_CEILINGS = {
    "480p": (854, 480),
    "720p": (1280, 720),
    "1080p": (1920, 1080),
}


def check_media_limits(asset: MediaAsset, entitlement: Entitlement) -> None:
    """Reject source media longer or larger than the plan allows"""
    if asset.duration_sec is not None and asset.duration_sec > entitlement.max_video_sec:
        raise ExceedsMediaLimit(
            f"Video duration {asset.duration_sec}s exceeds plan limit of {entitlement.max_video_sec}s"
        )

    if asset.width is None or asset.height is None:
        return

    ceiling = RESOLUTION_CEILINGS.get(entitlement.max_resolution)
    if ceiling is None:
        raise ExceedsMediaLimit(f"Unrecognized resolution tier: {entitlement.max_resolution}")

    max_width, max_height = ceiling
    if asset.width > max_width or asset.height > max_height:
        raise ExceedsMediaLimit(
            f"Resolution {asset.width}x{asset.height} exceeds plan limit. Allowed: {entitlement.max_resolution}"
        )


class AdmissionController:
    def __init__(self, db: Session, dispatcher: Dispatcher):
        self.db = db
        self.dispatcher = dispatcher

    def _owned_asset(self, user_id: str, asset_id: Optional[str]) -> Optional[MediaAsset]:
        if not asset_id:
            return None
        asset = self.db.get(MediaAsset, asset_id)
        if asset is None or asset.user_id != user_id:
            raise NotFound("MediaAsset", asset_id)
        return asset

    async def admit(
        self,
        user_id: str,
        processors: Sequence[str],
        source_asset_id: Optional[str] = None,
        target_asset_id: Optional[str] = None,
        audio_asset_id: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        day: Optional[date] = None,
    ) -> Job:
        resolved = entitlements.resolve(self.db, user_id)
        ent = resolved.entitlement

        weight = catalog.job_weight(self.db, processors)

        if len(processors) > ent.max_processors_per_job:
            raise ExceedsProcessorCount(len(processors), ent.max_processors_per_job)

        if weight > ent.max_weight_per_job:
            raise ExceedsJobWeight(weight, ent.max_weight_per_job)

        counter = ledger.ensure_counter(self.db, user_id, ledger.usage_period(day))
        if counter.jobs_total + weight > ent.daily_weight_quota:
            logger.info(f"User {user_id} over daily quota: {counter.jobs_total} + {weight} > {ent.daily_weight_quota}")
            raise QuotaExceeded(counter.jobs_total, weight, ent.daily_weight_quota)

        source = self._owned_asset(user_id, source_asset_id)
        self._owned_asset(user_id, target_asset_id)
        self._owned_asset(user_id, audio_asset_id)
        if source is not None:
            check_media_limits(source, ent)

        try:
            # The conditional charge is the authoritative quota check
            if not ledger.try_charge(self.db, counter.id, weight, ent.daily_weight_quota):
                raise QuotaExceeded(None, weight, ent.daily_weight_quota)
            job = JobStore(self.db).create_queued(
                user_id=user_id,
                processors=processors,
                weight=weight,
                options=options,
                source_asset_id=source_asset_id,
                target_asset_id=target_asset_id,
                audio_asset_id=audio_asset_id,
            )
            self.db.commit()
        except (GateError, SQLAlchemyError):
            self.db.rollback()
            raise

        logger.info(
            f"Admitted job {job.id} for {user_id} on plan {resolved.plan.code} "
            f"v{resolved.version}: weight {weight}"
        )
        return await self.dispatcher.publish(job)
