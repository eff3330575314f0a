"""Scheduled maintenance endpoints, called by an external scheduler."""
import hmac
from functools import wraps

from flask import Blueprint, request

from docquiz.api.responses import error_response, success_response
from docquiz.services import get_services
from dq_utils.logger_utils import logger

cron_bp = Blueprint('cron', __name__)


def cron_secret_required(f):
    """Decorator requiring `Authorization: Bearer <CRON_SECRET>`."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = get_services().settings.CRON_SECRET
        if not secret:
            logger.error("CRON_SECRET is not configured, refusing cron call")
            return error_response(503, "SERVICE_UNAVAILABLE", "Cron endpoint is not configured")
        supplied = request.headers.get('Authorization', '')
        if not hmac.compare_digest(supplied.encode(), f"Bearer {secret}".encode()):
            return error_response(401, "UNAUTHORIZED", "Invalid cron secret")
        return f(*args, **kwargs)
    return decorated_function


@cron_bp.route('/expire-stale-jobs', methods=['POST'])
@cron_secret_required
def expire_stale_jobs():
    expired = get_services().file_service.expire_stale_jobs()
    return success_response({"expired": expired, "count": len(expired)})
