from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..deps import get_current_caller, get_session
from ..domain.caller import Caller
from ..domain.errors import DomainError
from ..infrastructure.repositories import SqlAlchemyCatalogRepository, SqlAlchemySlotRepository
from ..schemas import SlotCreate, SlotRead
from ..usecases import slots as slot_usecase
from ..utils.audit_log import emit_audit_log, initiator_for
from .errors import to_http_exception

router = APIRouter(prefix="/offerings", tags=["slots"])


@router.get("/{offering_id}/slots", response_model=List[SlotRead])
async def list_availability(
    offering_id: int = Path(..., ge=1),
    slot_date: Optional[date] = Query(default=None, alias="date"),
    include_unavailable: bool = Query(default=False),
    session: AsyncSession = Depends(get_session),
) -> list[SlotRead]:
    slot_repo = SqlAlchemySlotRepository(session)
    slots = await slot_usecase.list_availability(
        slot_repo,
        offering_id=offering_id,
        slot_date=slot_date,
        include_unavailable=include_unavailable,
    )
    return [SlotRead.from_db(slot=slot) for slot in slots]


@router.post("/{offering_id}/slots", response_model=SlotRead, status_code=status.HTTP_201_CREATED)
async def create_slot(
    payload: SlotCreate,
    offering_id: int = Path(..., ge=1),
    session: AsyncSession = Depends(get_session),
    caller: Caller = Depends(get_current_caller),
) -> SlotRead:
    slot_repo = SqlAlchemySlotRepository(session)
    catalog_repo = SqlAlchemyCatalogRepository(session)
    try:
        async with session.begin():
            slot = await slot_usecase.create_slot(
                slot_repo,
                catalog_repo,
                caller=caller,
                offering_id=offering_id,
                slot_date=payload.slot_date,
                start_time=payload.start_time,
                end_time=payload.end_time,
                price_multiplier=payload.price_multiplier,
            )
    except DomainError as exc:
        raise to_http_exception(exc) from exc
    except IntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "slot_exists", "message": "slot already exists"},
        ) from exc

    emit_audit_log(
        action="slot.created",
        initiator=initiator_for(caller.role),
        user_id=caller.user_id,
        slot_id=slot.id,
        offering_id=slot.offering_id,
    )
    return SlotRead.from_db(slot=slot)
