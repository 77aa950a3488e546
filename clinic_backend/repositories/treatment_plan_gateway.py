"""
Applies plan-item sync commands emitted by the appointment lifecycle.

The normal path follows the appointment's ``linked_treatment_plan_code``
back-reference. Appointments booked before that column existed have no
back-reference; for those ``repair_plan_link`` probes the patient's plans one
by one, backfills the link and logs that the degraded path was taken.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinic_backend.core.errors import NotFound, UpstreamUnavailable
from clinic_backend.models.appointment import Appointment, AppointmentPlanItem
from clinic_backend.models.treatment_plan import TreatmentPlanItem
from clinic_backend.scheduling.timeutils import to_naive_utc
from clinic_backend.scheduling.types import PlanItemStatus, PlanItemSyncCommand

logger = logging.getLogger(__name__)


class TreatmentPlanGateway:
    def __init__(self, db: Session):
        self.db = db

    def _item_filter(self, command: PlanItemSyncCommand):
        if command.plan_item_codes:
            return TreatmentPlanItem.item_code.in_(command.plan_item_codes)
        linked_items = self.db.query(AppointmentPlanItem.item_code).join(
            Appointment, Appointment.id == AppointmentPlanItem.appointment_id,
        ).filter(Appointment.appointment_code == command.appointment_code)
        return TreatmentPlanItem.item_code.in_(linked_items.scalar_subquery())

    def linked_items(self, command: PlanItemSyncCommand) -> list[TreatmentPlanItem]:
        return self.db.query(TreatmentPlanItem).filter(
            TreatmentPlanItem.plan_code == command.treatment_plan_code,
            self._item_filter(command),
        ).all()

    def repair_plan_link(self, command: PlanItemSyncCommand) -> tuple[Optional[str], list[TreatmentPlanItem]]:
        """Find the plan holding the command's items by scanning the patient's plans."""
        logger.warning(
            'Appointment %s has no treatment plan back-reference; scanning plans of patient %s',
            command.appointment_code, command.patient_code,
        )
        plan_codes = [
            plan_code for (plan_code,) in self.db.query(TreatmentPlanItem.plan_code).filter(
                TreatmentPlanItem.patient_code == command.patient_code,
            ).distinct().order_by(TreatmentPlanItem.plan_code.asc()).all()
        ]

        for plan_code in plan_codes:
            items = self.db.query(TreatmentPlanItem).filter(
                TreatmentPlanItem.plan_code == plan_code,
                self._item_filter(command),
            ).all()
            if items:
                appointment = self.db.query(Appointment).filter(
                    Appointment.appointment_code == command.appointment_code,
                ).first()
                if appointment is not None:
                    appointment.linked_treatment_plan_code = plan_code
                    logger.info('Backfilled plan %s onto appointment %s', plan_code, command.appointment_code)
                return plan_code, items

        return None, []

    def apply(self, command: PlanItemSyncCommand) -> list[str]:
        """Move every linked plan item to the command's target status. Returns the item codes touched."""
        try:
            if command.treatment_plan_code:
                items = self.linked_items(command)
            else:
                _, items = self.repair_plan_link(command)

            if not items:
                self.db.rollback()
                raise NotFound(
                    f'No treatment plan items linked to appointment {command.appointment_code}.',
                    code='PLAN_ITEMS_NOT_FOUND',
                    details={
                        'appointment_code': command.appointment_code,
                        'treatment_plan_code': command.treatment_plan_code,
                        'plan_item_codes': list(command.plan_item_codes),
                    },
                )

            occurred_at = to_naive_utc(command.occurred_at)
            for item in items:
                item.status = command.target_status.value
                item.updated_at = occurred_at
                if command.target_status == PlanItemStatus.COMPLETED:
                    item.completed_at = occurred_at

            codes = sorted(item.item_code for item in items)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception('Treatment plan sync failed for appointment %s', command.appointment_code)
            raise UpstreamUnavailable(
                'Treatment plan items could not be updated.',
                code='PLAN_SYNC_FAILED',
                details={'appointment_code': command.appointment_code},
            ) from exc

        logger.info(
            'Plan items %s moved to %s for appointment %s',
            codes, command.target_status.value, command.appointment_code,
        )
        return codes
