"""Admin panel authentication.

Username/password login for the SQLAdmin panel, checked against
ADMIN_USERNAME / ADMIN_PASSWORD. The login flag lives in the signed session
cookie set up by SessionMiddleware in app/main.py.
"""

import hmac
import logging

from sqladmin.authentication import AuthenticationBackend
from starlette.requests import Request

from .deps import get_settings

logger = logging.getLogger(__name__)


class SimpleAuth(AuthenticationBackend):
    async def login(self, request: Request) -> bool:
        form = await request.form()
        username = str(form.get("username") or "")
        password = str(form.get("password") or "")

        settings = get_settings()
        valid = hmac.compare_digest(username, settings.ADMIN_USERNAME) and hmac.compare_digest(
            password, settings.ADMIN_PASSWORD
        )
        if not valid:
            logger.warning("[ADMIN] Failed admin login for %r", username)
            return False

        request.session.update({"admin": username})
        return True

    async def logout(self, request: Request) -> bool:
        request.session.clear()
        return True

    async def authenticate(self, request: Request) -> bool:
        return bool(request.session.get("admin"))
