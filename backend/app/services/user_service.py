from __future__ import annotations

from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.user_account import UserAccount
from app.services.errors import ServiceError, WalletNotConfigured


class UserService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def format_user_id(self, user_id: int) -> str:
        return f"u_{user_id:03d}"

    # ------------------------------------------------------------------
    # User lookups
    # ------------------------------------------------------------------
    def get_user(self, user_id: int) -> Optional[UserAccount]:
        return self.db.get(UserAccount, user_id)

    def get_user_by_wallet(self, wallet_address: str) -> Optional[UserAccount]:
        return self.db.query(UserAccount).filter(UserAccount.wallet_address == wallet_address).first()

    def get_or_create_user(self, user_id: int) -> UserAccount:
        """Accounts are provisioned on first contact; authentication happens upstream."""
        user = self.get_user(user_id)
        if user:
            return user
        user = UserAccount(id=user_id, username=self.format_user_id(user_id))
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError:
            # Another request provisioned the same account first
            self.db.rollback()
            user = self.get_user(user_id)
            if user is None:
                raise
            return user
        self.db.refresh(user)
        return user

    # ------------------------------------------------------------------
    # Wallet binding
    # ------------------------------------------------------------------
    def bind_wallet(self, user_id: int, wallet_address: Optional[str]) -> UserAccount:
        """Bind the settlement destination on first use; later calls must repeat the same address."""
        address = (wallet_address or "").strip()
        if not address:
            raise WalletNotConfigured(user_id)

        user = self.get_or_create_user(user_id)
        if user.wallet_address == address:
            return user
        if user.wallet_address:
            raise ServiceError(
                409,
                "CONFLICT",
                "A different wallet address is already bound to this user.",
                {"field": "walletAddress"},
            )

        owner = self.get_user_by_wallet(address)
        if owner is not None:
            raise ServiceError(
                409,
                "CONFLICT",
                "Wallet address is already bound to another user.",
                {"field": "walletAddress"},
            )

        user.wallet_address = address
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ServiceError(
                409,
                "CONFLICT",
                "Wallet address is already bound to another user.",
                {"field": "walletAddress"},
            )
        self.db.refresh(user)
        return user
