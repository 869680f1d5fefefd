from fastapi import Depends, Request

from app.database import get_db
from app.services.assignment import AssignmentEngine
from app.services.capacity_store import CapacityStore
from app.services.notifications import NotificationDispatcher


async def get_store() -> CapacityStore:
    return CapacityStore(await get_db())


def get_dispatcher(request: Request) -> NotificationDispatcher | None:
    return getattr(request.app.state, "dispatcher", None)


def get_engine(
    store: CapacityStore = Depends(get_store),
    dispatcher: NotificationDispatcher | None = Depends(get_dispatcher),
) -> AssignmentEngine:
    return AssignmentEngine(store, dispatcher)
