"""Timer trigger blueprint: scheduled delta cycle."""

import logging

import azure.functions as func

from graph_drive.config import load_config
from graph_drive.orchestration.cycle import delta_cycle_from_config

logger = logging.getLogger(__name__)

bp = func.Blueprint()


@bp.timer_trigger(
    schedule="0 */5 * * * *",
    arg_name="timer",
    run_on_startup=False,
)
def timer_trigger(timer: func.TimerRequest) -> None:
    """Scheduled trigger that enumerates OneDrive changes.

    Runs every 5 minutes. Fetches every change since the last persisted
    delta token and saves the new token for the next run.
    """
    logger.info("[timer_trigger] timer trigger fired")

    try:
        if timer.past_due:
            logger.warning("[timer_trigger] timer trigger is past due")

        config = load_config()
        with delta_cycle_from_config(config) as cycle:
            items = cycle.run()
        deleted = sum(1 for item in items if item.is_deleted)
        logger.info(
            "[timer_trigger] delta cycle complete; item_count:%d;deleted_count:%d",
            len(items),
            deleted,
        )

    except Exception:
        logger.exception("[timer_trigger] timer trigger failed")
        raise
