import logging
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import get_settings
from .errors import ErrorKind, Unauthenticated, UnlockLedgerError
from .models import (
    Actor,
    EnrollmentStatusResponse,
    ErrorDetail,
    ErrorResponse,
    IssueTransactionRequest,
    IssueTransactionResponse,
    RedeemCodeRequest,
    RedeemCodeResponse,
    TransactionPage,
    TransactionRecord,
    UnlockCodePage,
    UnlockCodeView,
)
from .service import UnlockLedgerService, create_service

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorKind.COURSE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.CODE_GENERATION_EXHAUSTED: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.CODE_NOT_FOUND_FOR_COURSE: status.HTTP_404_NOT_FOUND,
    ErrorKind.CODE_ALREADY_REDEEMED: status.HTTP_409_CONFLICT,
    ErrorKind.CODE_EXPIRED: status.HTTP_400_BAD_REQUEST,
    ErrorKind.ALREADY_ENROLLED: status.HTTP_409_CONFLICT,
    ErrorKind.TRANSACTION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.UNLOCK_CODE_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.STORAGE_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.UNAUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
}

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


def get_service(request: Request) -> UnlockLedgerService:
    return request.app.state.ledger_service


def admin_actor(
    x_actor_id: Optional[str] = Header(default=None),
    x_actor_name: Optional[str] = Header(default=None),
    x_actor_role: Optional[str] = Header(default=None),
) -> Actor:
    if not x_actor_id:
        raise Unauthenticated("Admin identity required")
    return Actor(id=x_actor_id, name=x_actor_name or "Admin", role=x_actor_role or "admin")


def student_actor(
    x_student_id: Optional[str] = Header(default=None),
    x_student_name: Optional[str] = Header(default=None),
) -> Actor:
    if not x_student_id:
        raise Unauthenticated("Student identity required")
    return Actor(id=x_student_id, name=x_student_name or "Student", role="student")


def error_response(kind: ErrorKind, message: str, status_code: int) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(kind=kind, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


def create_app(service: Optional[UnlockLedgerService] = None, root_path: str = "") -> FastAPI:
    logging.basicConfig(level=get_settings().log_level)
    app = FastAPI(
        title="Offline Payment Unlock Code API",
        description="Offline sales, single-use unlock codes and exactly-once course enrollment",
        version="1.0.0",
        root_path=root_path,
    )
    app.state.ledger_service = service or create_service()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(UnlockLedgerError)
    async def ledger_error_handler(request: Request, exc: UnlockLedgerError) -> JSONResponse:
        status_code = STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_response(exc.kind, exc.message, status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) or "body" for err in exc.errors())
        return error_response(
            ErrorKind.VALIDATION_ERROR,
            f"Missing or invalid fields: {fields}",
            422,
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "unlock-ledger"}

    @app.post(
        "/orders-payments/transactions",
        response_model=IssueTransactionResponse,
        status_code=status.HTTP_201_CREATED,
        responses=ERROR_RESPONSES,
        tags=["Orders & Payments"],
    )
    def issue_offline_transaction(
        request: IssueTransactionRequest,
        issuer: Actor = Depends(admin_actor),
        service: UnlockLedgerService = Depends(get_service),
    ) -> IssueTransactionResponse:
        return service.issue_offline_transaction(request, issuer)

    @app.get("/orders-payments/transactions", response_model=TransactionPage, tags=["Orders & Payments"])
    def list_transactions(
        page: int = Query(default=1),
        limit: int = Query(default=50),
        _: Actor = Depends(admin_actor),
        service: UnlockLedgerService = Depends(get_service),
    ) -> TransactionPage:
        return service.list_transactions(page, limit)

    @app.get(
        "/orders-payments/transactions/{transaction_id}",
        response_model=TransactionRecord,
        responses=ERROR_RESPONSES,
        tags=["Orders & Payments"],
    )
    def get_transaction(
        transaction_id: UUID,
        _: Actor = Depends(admin_actor),
        service: UnlockLedgerService = Depends(get_service),
    ) -> TransactionRecord:
        return service.get_transaction(transaction_id)

    @app.get("/orders-payments/codes", response_model=UnlockCodePage, tags=["Orders & Payments"])
    def list_unlock_codes(
        page: int = Query(default=1),
        limit: int = Query(default=50),
        _: Actor = Depends(admin_actor),
        service: UnlockLedgerService = Depends(get_service),
    ) -> UnlockCodePage:
        return service.list_unlock_codes(page, limit)

    @app.get(
        "/orders-payments/codes/{unlock_code_id}",
        response_model=UnlockCodeView,
        responses=ERROR_RESPONSES,
        tags=["Orders & Payments"],
    )
    def get_unlock_code(
        unlock_code_id: UUID,
        _: Actor = Depends(admin_actor),
        service: UnlockLedgerService = Depends(get_service),
    ) -> UnlockCodeView:
        return service.get_unlock_code(unlock_code_id)

    @app.post(
        "/orders-payments/redeem",
        response_model=RedeemCodeResponse,
        responses=ERROR_RESPONSES,
        tags=["Redemption"],
    )
    def redeem_code(
        request: RedeemCodeRequest,
        student: Actor = Depends(student_actor),
        service: UnlockLedgerService = Depends(get_service),
    ) -> RedeemCodeResponse:
        return service.redeem_code(request, student)

    @app.get(
        "/enrollments/{student_id}/{course_id}",
        response_model=EnrollmentStatusResponse,
        tags=["Enrollments"],
    )
    def get_enrollment_status(
        student_id: str,
        course_id: str,
        service: UnlockLedgerService = Depends(get_service),
    ) -> EnrollmentStatusResponse:
        enrollment = service.enrollments.get_enrollment(student_id, course_id)
        return EnrollmentStatusResponse(
            student_id=student_id,
            course_id=course_id,
            enrolled=enrollment is not None and enrollment.is_active,
            enrollment=enrollment,
        )

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
