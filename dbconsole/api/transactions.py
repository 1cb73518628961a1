"""Transaction endpoints: start, stage, commit, rollback, extend."""

from fastapi import APIRouter, Depends

from dbconsole.access.models import TableRef
from dbconsole.api.schemas import OpRequest, TableTarget
from dbconsole.auth.dependencies import get_coordinator, get_current_session
from dbconsole.auth.session import Session
from dbconsole.services.coordinator import RequestCoordinator

router = APIRouter(prefix="/api/transactions", tags=["transactions"])


def _now(coordinator: RequestCoordinator) -> float:
    return coordinator.transactions.clock.monotonic()


@router.post("")
async def start_transaction(
    payload: TableTarget,
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    target = TableRef(payload.database, payload.schema_name, payload.table)
    tx = await coordinator.start_transaction(session, target)
    return tx.status(_now(coordinator))


@router.get("/active")
async def active_transaction(
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return {"transaction": await coordinator.active_transaction(session)}


@router.get("/{tx_id}")
async def transaction_status(
    tx_id: str,
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return await coordinator.transaction_status(session, tx_id)


@router.post("/{tx_id}/ops")
async def stage_op(
    tx_id: str,
    payload: OpRequest,
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    op = await coordinator.stage_op(session, tx_id, payload.spec())
    return op.to_dict()


@router.post("/{tx_id}/commit")
async def commit(
    tx_id: str,
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    tx = await coordinator.commit(session, tx_id)
    return tx.status(_now(coordinator))


@router.post("/{tx_id}/rollback")
async def rollback(
    tx_id: str,
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    tx = await coordinator.rollback(session, tx_id)
    return tx.status(_now(coordinator))


@router.post("/{tx_id}/extend")
async def extend(
    tx_id: str,
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    tx = await coordinator.extend_transaction(session, tx_id)
    return tx.status(_now(coordinator))
