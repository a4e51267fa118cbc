"""
FastAPI integration - request scoped unit of work and error mapping.

Each request gets its own transactional unit of work: begun before the
endpoint runs, committed when it returns, rolled back when it raises.
Routes using ``UnitOfWorkRoute`` commit before the response is sent, so a
failed commit reaches the client as an error response.
"""

import logging
from typing import Callable, Iterator, Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute

from datalayer.adapters.context import AbstractPersistenceContext
from datalayer.domain.exceptions import (
    AmbiguousResultError,
    InvalidIncludeError,
    MissingContextError,
    NotFoundError,
    RepositoryError,
    StorageFailureError,
)
from datalayer.service_layer.registry import RepositoryRegistry, default_registry
from datalayer.service_layer.unit_of_work import TransactionalUnitOfWork, TransactionState

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidIncludeError: status.HTTP_400_BAD_REQUEST,
    AmbiguousResultError: status.HTTP_409_CONFLICT,
    StorageFailureError: status.HTTP_503_SERVICE_UNAVAILABLE,
    MissingContextError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def unit_of_work_dependency(
    context_factory: Callable[[], AbstractPersistenceContext],
    registry: Optional[RepositoryRegistry] = None,
) -> Callable[[], Iterator[TransactionalUnitOfWork]]:
    """
    Build a FastAPI dependency yielding a begun ``TransactionalUnitOfWork``.

    Exactly one of commit or rollback runs per request. Pair it with
    ``UnitOfWorkRoute`` so the commit runs before the response is sent;
    otherwise it runs when the dependency is torn down, after the response.

    Usage:
        get_uow = unit_of_work_dependency(SalesContext)
        router = APIRouter(route_class=UnitOfWorkRoute)

        @router.post("/customers")
        def create_customer(payload: CustomerIn, uow=Depends(get_uow)):
            uow.repository(Customer).add(Customer(name=payload.name))
    """

    def dependency(request: Request) -> Iterator[TransactionalUnitOfWork]:
        uow = TransactionalUnitOfWork(context_factory(), registry=registry or default_registry)
        request.state.unit_of_work = uow
        try:
            uow.begin()
            yield uow
        except Exception:
            logger.info("Request failed, rolling back unit of work")
            if uow.state is TransactionState.BEGUN:
                uow.rollback()
            raise
        else:
            if uow.state is TransactionState.BEGUN:
                logger.warning("Unit of work committed after the response was sent")
                uow.commit()
        finally:
            uow.dispose()

    return dependency


class UnitOfWorkRoute(APIRoute):
    """
    Route committing the request's unit of work once the endpoint returns,
    before the response goes out. A failed commit is raised to the exception
    handlers instead of the endpoint's response.
    """

    def get_route_handler(self) -> Callable:
        handler = super().get_route_handler()

        async def route_handler(request: Request) -> Response:
            response = await handler(request)
            uow = getattr(request.state, "unit_of_work", None)
            if uow is not None and uow.state is TransactionState.BEGUN:
                await run_in_threadpool(uow.commit)
            return response

        return route_handler


def status_for(error: RepositoryError) -> int:
    for error_type in type(error).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def repository_error_handler(request: Request, exc: RepositoryError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": str(exc),
            "error": type(exc).__name__,
            "entity_type": exc.entity_type,
            "operation": exc.operation,
        },
    )


def register_exception_handlers(app: FastAPI) -> FastAPI:
    """Translate repository failures into JSON error responses."""
    app.add_exception_handler(RepositoryError, repository_error_handler)
    return app
