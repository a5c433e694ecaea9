"""User repository."""

import uuid
from typing import Optional

from ..exceptions import UserNotFoundError
from ..models.user import User
from .base import BaseRepository


class UserRepository(BaseRepository[User]):
    model_class = User
    not_found_error = UserNotFoundError

    def get_by_subject(self, auth_subject: str) -> Optional[User]:
        return self.db.query(User).filter(User.auth_subject == auth_subject).first()

    def get_or_create_by_subject(
        self,
        auth_subject: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> tuple[User, bool]:
        """Return the user for an external subject, creating it on first login.

        Returns (user, is_new). Profile fields are refreshed when supplied.
        """
        user = self.get_by_subject(auth_subject)
        if user is not None:
            if email and user.email != email:
                user.email = email
            if display_name and user.display_name != display_name:
                user.display_name = display_name
            self.db.flush()
            return user, False

        user = User(
            id=uuid.uuid4().hex,
            auth_subject=auth_subject,
            email=email,
            display_name=display_name,
        )
        self.db.add(user)
        self.db.flush()
        self.db.refresh(user)
        return user, True
