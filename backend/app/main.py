from __future__ import annotations

from typing import Annotated, Callable

from fastapi import Depends, FastAPI, Query

from . import schemas
from .core.config import settings
from .db import get_db, init_db
from .models import PositionStatus
from .services.portfolio_service import PortfolioService

app = FastAPI(title="Edge Trader API", version="0.1.0", debug=settings.debug)

_POSITION_STATUS_PATTERN = "^(" + "|".join(status.value for status in PositionStatus) + ")$"


@app.on_event("startup")
def on_startup() -> None:
    """Initialize database connections when the API boots."""

    init_db()


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


def _portfolio_service(db=Depends(get_db)) -> PortfolioService:
    """Provide the portfolio service wired with a SQLAlchemy session."""

    return PortfolioService(db)


def get_cycle_runner() -> Callable[..., object]:
    from pipelines.trading_cycle import run_cycle

    return run_cycle


def get_resolution_runner() -> Callable[[], object]:
    from pipelines.resolution_run import ResolutionPipeline

    return lambda: ResolutionPipeline().run()


@app.get("/portfolio", response_model=schemas.Portfolio, tags=["portfolio"])
def get_portfolio(service: PortfolioService = Depends(_portfolio_service)):
    """Return the reconciled portfolio with performance totals."""

    return service.portfolio()


@app.get("/positions", response_model=schemas.PositionList, tags=["portfolio"])
def list_positions(
    *,
    status: Annotated[
        str | None,
        Query(description="Position status filter", pattern=_POSITION_STATUS_PATTERN),
    ] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    service: PortfolioService = Depends(_portfolio_service),
):
    """List paper positions, newest first."""

    items = service.positions(status=status, limit=limit)
    return schemas.PositionList(total=len(items), items=items)


@app.get("/cycles", response_model=schemas.CycleLogList, tags=["cycles"])
def list_cycles(
    *,
    limit: Annotated[int, Query(ge=1, le=200)] = 20,
    service: PortfolioService = Depends(_portfolio_service),
):
    """Return recent cycle audit logs."""

    items = service.cycle_logs(limit=limit)
    return schemas.CycleLogList(total=len(items), items=items)


@app.get("/activities", response_model=schemas.ActivityList, tags=["cycles"])
def list_activities(
    *,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
    service: PortfolioService = Depends(_portfolio_service),
):
    items = service.activities(limit=limit)
    return schemas.ActivityList(total=len(items), items=items)


@app.post("/cycle/run", response_model=schemas.CycleRunResult, tags=["cycles"])
def trigger_cycle(
    request: schemas.CycleRunRequest | None = None,
    runner: Callable[..., object] = Depends(get_cycle_runner),
):
    """Run one trading cycle synchronously and return its summary."""

    request = request or schemas.CycleRunRequest()
    summary = runner(force=request.force, dry_run=request.dry_run)
    return schemas.CycleRunResult(**summary.to_dict())


@app.post("/resolution/run", response_model=schemas.ResolutionRunResult, tags=["cycles"])
def trigger_resolution(runner: Callable[[], object] = Depends(get_resolution_runner)):
    """Settle positions whose markets have closed."""

    summary = runner()
    return schemas.ResolutionRunResult(**summary.to_dict())


@app.post("/reset", response_model=schemas.ResetResult, tags=["system"])
def reset(
    *,
    portfolio: Annotated[
        bool, Query(description="Also delete positions, logs and activities")
    ] = False,
    service: PortfolioService = Depends(_portfolio_service),
):
    """Clear the cycle throttle, lock and analyzed cache."""

    return service.reset(portfolio=portfolio)
