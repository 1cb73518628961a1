"""Access listing, table reads and foreign-key navigation."""

from fastapi import APIRouter, Depends

from dbconsole.access.models import TableRef
from dbconsole.api.schemas import ChildrenRequest, ParentRequest, QueryRequest, ReadRequest
from dbconsole.auth.dependencies import get_coordinator, get_current_session
from dbconsole.auth.session import Session
from dbconsole.services.coordinator import NOT_VISIBLE, RequestCoordinator

router = APIRouter(prefix="/api", tags=["data"])


@router.get("/access")
async def list_access(
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    access = await coordinator.list_access(session)
    return access.to_dict()


@router.post("/access/refresh")
async def refresh_access(
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    access = await coordinator.refresh_access(session)
    return access.to_dict()


@router.get("/tables/{database}/{schema}/{table}")
async def describe_table(
    database: str,
    schema: str,
    table: str,
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    info = await coordinator.describe_table(session, TableRef(database, schema, table))
    return info.to_dict()


@router.post("/tables/{database}/{schema}/{table}/rows")
async def read_table(
    database: str,
    schema: str,
    table: str,
    payload: ReadRequest,
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    result = await coordinator.read_table(
        session,
        TableRef(database, schema, table),
        where=payload.where,
        sort=payload.sort(),
        page=payload.page(),
    )
    return result.to_dict()


@router.post("/tables/{database}/{schema}/{table}/parent")
async def navigate_parent(
    database: str,
    schema: str,
    table: str,
    payload: ParentRequest,
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    result = await coordinator.navigate_parent(
        session, TableRef(database, schema, table), payload.constraint, payload.row
    )
    if result is NOT_VISIBLE:
        return NOT_VISIBLE.to_dict()
    return {"visible": True, **result.to_dict()}


@router.post("/tables/{database}/{schema}/{table}/children")
async def navigate_children(
    database: str,
    schema: str,
    table: str,
    payload: ChildrenRequest,
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    result = await coordinator.navigate_children(
        session,
        TableRef(database, schema, table),
        TableRef(database, payload.child_schema, payload.child_table),
        payload.constraint,
        payload.row,
        page=payload.page(),
    )
    return result.to_dict()


@router.post("/query")
async def execute_query(
    payload: QueryRequest,
    session: Session = Depends(get_current_session),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    """Run an ad-hoc SQL script, one statement at a time."""
    results = await coordinator.execute_adhoc(
        session,
        payload.database,
        payload.sql,
        parameters=payload.parameters,
        page=payload.page(),
    )
    return {"results": [result.to_dict() for result in results]}
