import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from .entities import UserRecord
from .errors import InvalidArgument
from .models import Credentials, Identity

logger = logging.getLogger(__name__)


class AccountService:
    def __init__(self, session: Session):
        self.session = session

    def register(self, payload: Credentials) -> Identity:
        email = payload.email.strip().lower()
        record = UserRecord(email=email, password_hash=generate_password_hash(payload.password))
        self.session.add(record)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            raise InvalidArgument("Email already registered.") from exc
        logger.info("account.registered", extra={"user_id": record.id})
        return Identity(id=record.id, email=record.email)

    def authenticate(self, payload: Credentials) -> Identity:
        email = payload.email.strip().lower()
        record = self.session.execute(
            select(UserRecord).where(func.lower(UserRecord.email) == email)
        ).scalar_one_or_none()
        if record is None or not check_password_hash(record.password_hash, payload.password):
            logger.info("account.login_failed")
            raise InvalidArgument("Invalid credentials")
        return Identity(id=record.id, email=record.email)
