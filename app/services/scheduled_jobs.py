"""
Inspection Workflow Platform
Scheduled Jobs.

Jobs:
    - escalation_sweep: escalates overdue reviews, fires timeout warnings and
      auto actions, and runs delayed auto-triggers for every active shop
"""

from __future__ import annotations

import logging
from typing import Any

from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("escalation_sweep", interval_setting="ESCALATION_SWEEP_INTERVAL_MINUTES")
def run_escalation_sweep(app) -> dict[str, Any]:
    """Run the workflow escalation sweep across all shops."""
    summary = app.extensions["escalation_service"].run_escalation_sweep().to_dict()
    if summary["errors"]:
        logger.warning("escalation_sweep finished with %d error(s)", len(summary["errors"]),
                       extra={"event_type": "escalation_sweep"})
    return summary
