"""HTTP trigger blueprint: health check and manual delta cycle endpoints."""

import json
import logging

import azure.functions as func

from graph_drive import __version__
from graph_drive.config import load_config
from graph_drive.orchestration.cycle import delta_cycle_from_config

logger = logging.getLogger(__name__)

bp = func.Blueprint()


@bp.route(route="health", methods=["GET"], auth_level=func.AuthLevel.ANONYMOUS)
def health_check(req: func.HttpRequest) -> func.HttpResponse:
    """Health check endpoint. Returns service status and version."""
    logger.info("[health_check] health check requested")

    try:
        body = json.dumps({"status": "ok", "version": __version__})
        return func.HttpResponse(body, status_code=200, mimetype="application/json")

    except Exception:
        logger.error("[health_check] health check failed", exc_info=True)
        error_body = json.dumps({"status": "error", "message": "Internal server error"})
        return func.HttpResponse(error_body, status_code=500, mimetype="application/json")


@bp.route(route="trigger", methods=["POST"], auth_level=func.AuthLevel.FUNCTION)
def manual_trigger(req: func.HttpRequest) -> func.HttpResponse:
    """Manual trigger endpoint: runs one delta cycle on demand.

    Requires a function key for authentication. Executes the same logic
    as the timer trigger but returns a summary in the HTTP response.
    """
    logger.info("[manual_trigger] manual trigger requested")

    try:
        config = load_config()
        with delta_cycle_from_config(config) as cycle:
            items = cycle.run()

        deleted = sum(1 for item in items if item.is_deleted)
        folders = sum(1 for item in items if item.is_folder and not item.is_deleted)
        logger.info(
            "[manual_trigger] delta cycle complete; item_count:%d;deleted_count:%d",
            len(items),
            deleted,
        )

        body = json.dumps(
            {
                "status": "ok",
                "items_changed": len(items),
                "items_deleted": deleted,
                "folders_changed": folders,
            }
        )
        return func.HttpResponse(body, status_code=200, mimetype="application/json")

    except Exception:
        logger.error("[manual_trigger] manual trigger failed", exc_info=True)
        error_body = json.dumps({"status": "error", "message": "Internal server error"})
        return func.HttpResponse(error_body, status_code=500, mimetype="application/json")
