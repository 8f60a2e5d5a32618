"""Session token storage for the storefront backend."""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from .models import SessionData

logger = logging.getLogger(__name__)


class AuthManager:
    """Manages authentication state and session persistence."""

    def __init__(self, session_file: Optional[str] = None) -> None:
        """
        Initialize the authentication manager.

        Args:
            session_file: Path to store session data. Defaults to ~/.storefront_session.json
        """
        if session_file is None:
            session_file = str(Path.home() / ".storefront_session.json")
        self.session_file = session_file
        self.session: SessionData = self._load_session()

        self._load_token_from_env()

    def _load_session(self) -> SessionData:
        """Load session data from file if it exists."""
        if os.path.exists(self.session_file):
            try:
                with open(self.session_file, "r") as f:
                    data = json.load(f)
                    return SessionData(**data)
            except (json.JSONDecodeError, ValueError):
                # If file is corrupted, start fresh
                logger.warning(f"Ignoring unreadable session file {self.session_file}")
        return SessionData()

    def _save_session(self) -> None:
        """Save session data to file."""
        with open(self.session_file, "w") as f:
            json.dump(self.session.model_dump(), f, default=str)
        os.chmod(self.session_file, 0o600)

    def save_session(
        self,
        auth_token: str,
        user_id: Optional[int] = None,
        user_email: Optional[str] = None,
    ) -> None:
        """
        Record a signed-in user.

        The guest token is kept so that the guest cart can still be migrated
        after sign-in.
        """
        self.session = SessionData(
            auth_token=auth_token,
            guest_token=self.session.guest_token,
            user_id=user_id,
            user_email=user_email,
            is_authenticated=True,
        )
        self._save_session()

    def set_guest_token(self, token: str) -> None:
        """Store a session token handed out by the backend to an anonymous visitor."""
        if token == self.session.guest_token:
            return
        self.session = self.session.model_copy(update={"guest_token": token})
        self._save_session()

    def clear_guest_token(self) -> None:
        if self.session.guest_token is None:
            return
        self.session = self.session.model_copy(update={"guest_token": None})
        self._save_session()

    def get_session(self) -> SessionData:
        """Get current session data."""
        return self.session

    def clear_session(self) -> None:
        """Clear the current session."""
        self.session = SessionData()
        if os.path.exists(self.session_file):
            os.remove(self.session_file)

    def is_authenticated(self) -> bool:
        """Check if there's an active authenticated session."""
        return self.session.is_authenticated and bool(self.session.auth_token)

    def session_token(self) -> Optional[str]:
        """Token to send with requests: the user's token, else the guest's."""
        if self.is_authenticated():
            return self.session.auth_token
        return self.session.guest_token

    def _load_token_from_env(self) -> None:
        """
        Load a bearer token from environment variables.

        Environment variable mapping:
        - STOREFRONT_AUTH_TOKEN → auth_token
        - STOREFRONT_USER_ID → user_id (optional)
        - STOREFRONT_USER_EMAIL → user_email (optional)
        """
        token = os.environ.get("STOREFRONT_AUTH_TOKEN")
        if not token:
            logger.debug("No auth token found in environment variables")
            return

        user_id = os.environ.get("STOREFRONT_USER_ID")
        self.save_session(
            auth_token=token,
            user_id=int(user_id) if user_id and user_id.isdigit() else None,
            user_email=os.environ.get("STOREFRONT_USER_EMAIL"),
        )
        logger.info("✓ Loaded auth token from environment")
