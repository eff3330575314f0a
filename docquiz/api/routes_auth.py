"""Session-based user identity for the API."""
from flask_login import LoginManager

from docquiz.api.responses import error_response
from docquiz.services import get_services

# Initialize Login Manager
login_manager = LoginManager()


class FlaskUser:
    """Flask-Login compatible user wrapper."""

    def __init__(self, user):
        self.user = user
        self.id = user.id
        self.is_authenticated = True
        self.is_active = user.is_active
        self.is_anonymous = False

    @property
    def tier(self):
        return self.user.tier

    def get_id(self):
        return self.id


@login_manager.user_loader
def load_user(user_id):
    """Load user by ID for Flask-Login."""
    user = get_services().users.get_by_id(user_id)
    if user and user.is_active:
        return FlaskUser(user)
    return None


@login_manager.unauthorized_handler
def unauthorized():
    """Every protected route is an API route, so answer with the JSON envelope."""
    return error_response(401, "UNAUTHORIZED", "Authentication required")
