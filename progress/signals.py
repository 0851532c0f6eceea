from __future__ import annotations

from django.db.models.signals import post_delete, post_save
from django.dispatch import receiver

from .models import PhaseInterval, RoadPhase
from .services.progress import refresh_design_length
from .services.quantities import recompute_interval_inputs


def _owning_phase(instance: PhaseInterval) -> RoadPhase | None:
    return RoadPhase.objects.filter(pk=instance.phase_id).first()


@receiver(post_save, sender=PhaseInterval)
def _recompute_on_interval_save(sender, instance: PhaseInterval, created: bool, raw: bool = False, **kwargs):
    if raw:
        return
    phase = _owning_phase(instance)
    if phase is None:
        return
    refresh_design_length(phase)
    if not created:
        recompute_interval_inputs(instance)


@receiver(post_delete, sender=PhaseInterval)
def _refresh_on_interval_delete(sender, instance: PhaseInterval, **kwargs):
    phase = _owning_phase(instance)
    if phase is not None:
        refresh_design_length(phase)
