from .data import router as data_router
from .user import router as user_router
from .wallet import router as wallet_router

__all__ = [
    "data_router",
    "user_router",
    "wallet_router",
]
