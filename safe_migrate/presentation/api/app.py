"""FastAPI application."""

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any

from safe_migrate.application.dtos.migration_dto import MigrationRequest, PlanActionRequest
from safe_migrate.domain.entities.verdict import MigrationReport
from safe_migrate.infrastructure.di_container import DIContainer
from safe_migrate.infrastructure.repositories.operation_repository import OperationRepository


# Pydantic models for API
class OperationInput(BaseModel):
    """Input model for one operation descriptor."""
    kind: str
    table: str = ""
    column: Optional[str] = None
    columns: Optional[List[str]] = None
    new_column: Optional[str] = None
    definition: Optional[str] = None
    phase: Optional[str] = None
    statement: Optional[str] = None
    index_name: Optional[str] = None
    mode: Optional[str] = None
    unique: bool = False
    where: Optional[str] = None
    constraint_name: Optional[str] = None
    id: Optional[str] = None


class BackfillResultInput(BaseModel):
    """Verification result reported by the migration runner."""
    plan_id: str
    total_rows: int
    mismatched_rows: int
    source_checksum: str
    target_checksum: str


class CheckRequest(BaseModel):
    """Input model for a migration batch."""
    operations: List[OperationInput]
    backfill_results: List[BackfillResultInput] = Field(default_factory=list)
    strict: Optional[bool] = None
    operator: str = "api"


class PlanActionInput(BaseModel):
    """Input model for resume/compensate."""
    operator: str
    reason: str


class ReportOutput(BaseModel):
    """Output model for a migration report."""
    ok: bool
    session: int
    rule_table_version: str
    verdicts: List[Dict[str, Any]]
    pre_deploy: List[Dict[str, Any]]
    post_deploy: List[Dict[str, Any]]
    plans: List[Dict[str, Any]]
    diagnostics: List[str]
    errors: List[Dict[str, str]]


def _respond(report: MigrationReport) -> ReportOutput:
    if not report.ok:
        raise HTTPException(status_code=409, detail=report.to_dict())
    return ReportOutput(**report.to_dict())


def create_app(container: Optional[DIContainer] = None) -> FastAPI:
    """Create and configure FastAPI application."""

    app = FastAPI(
        title="Safe Migrate",
        description="Blue/green-safe PostgreSQL migration planner",
        version="1.0.0"
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    container = container or DIContainer()
    operations = OperationRepository()

    @app.get("/")
    def root():
        """Root endpoint."""
        return {
            "name": "Safe Migrate",
            "version": "1.0.0",
            "endpoints": {
                "check": "/api/v1/check",
                "plans": "/api/v1/plans",
                "resume": "/api/v1/plans/{plan_id}/resume",
                "compensate": "/api/v1/plans/{plan_id}/compensate",
            }
        }

    @app.post("/api/v1/check", response_model=ReportOutput)
    def check_migration(input_data: CheckRequest):
        """
        Classify, expand and schedule one migration batch.
        A rejected batch answers 409 with the full report.
        """
        try:
            request = MigrationRequest(
                operations=operations.parse_operations(
                    [op.model_dump(exclude_none=True) for op in input_data.operations]
                ),
                backfill_results=operations.parse_backfill_results(
                    {"backfill_results": [r.model_dump() for r in input_data.backfill_results]}
                ),
                strict=input_data.strict,
                operator=input_data.operator,
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

        if not operations.validate_operations(request.operations):
            raise HTTPException(status_code=422, detail="Operation ids must be unique within a batch")

        return _respond(container.get_orchestrator().process(request))

    @app.get("/api/v1/plans")
    def list_plans():
        """List recorded lifecycle plans."""
        return {"plans": container.get_orchestrator().list_plans()}

    @app.post("/api/v1/plans/{plan_id}/resume", response_model=ReportOutput)
    def resume_plan(plan_id: str, input_data: PlanActionInput):
        """Unfreeze a plan after a failed verification."""
        orchestrator = container.get_orchestrator()
        return _respond(orchestrator.resume(PlanActionRequest(plan_id, input_data.operator, input_data.reason)))

    @app.post("/api/v1/plans/{plan_id}/compensate", response_model=ReportOutput)
    def compensate_plan(plan_id: str, input_data: PlanActionInput):
        """Abandon a rename and drop its shadow column."""
        orchestrator = container.get_orchestrator()
        return _respond(orchestrator.compensate(PlanActionRequest(plan_id, input_data.operator, input_data.reason)))

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app
