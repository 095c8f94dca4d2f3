"""
SecureHealth Chain - FastAPI Application
Patient and payment registries over HTTP, with the patient directory mirror
"""

from fastapi import FastAPI, HTTPException, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
import logging
import time

from shc_config import SystemConfig
from shc_enforcement_v1 import (
    SYSTEM_CONFIG,
    InvariantViolation,
    EmptyField,
    DuplicatePrimaryKey,
    DuplicateBusinessKey,
    RecordNotFound,
    Unauthorized,
    UnauthorizedTarget,
    InsufficientPayment,
    AlreadyPaid,
    SystemCompromised
)
from shc_audit_v1 import AuditEventKind
from shc_chain_v1 import SecureHealthChain
from shc_mirror_v1 import PatientDirectory, DirectoryError
from shc_metrics import (
    metrics_registry,
    record_audit_event,
    record_rejection,
    record_api_request,
    update_system_health
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)
logger = logging.getLogger("shc.api")

ERROR_STATUS = {
    EmptyField: status.HTTP_400_BAD_REQUEST,
    InsufficientPayment: status.HTTP_400_BAD_REQUEST,
    Unauthorized: status.HTTP_403_FORBIDDEN,
    UnauthorizedTarget: status.HTTP_403_FORBIDDEN,
    RecordNotFound: status.HTTP_404_NOT_FOUND,
    DuplicatePrimaryKey: status.HTTP_409_CONFLICT,
    DuplicateBusinessKey: status.HTTP_409_CONFLICT,
    AlreadyPaid: status.HTTP_409_CONFLICT
}

# ============================================
# PYDANTIC MODELS (API DTOs)
# ============================================

class RegisterPatientRequest(BaseModel):
    member_id: str
    payload: str

    class Config:
        json_schema_extra = {
            "example": {
                "member_id": "MEM1",
                "payload": "0x7b2270617469656e744e616d65223a22416c696365227d"
            }
        }

class RegistrationResponse(BaseModel):
    primary_key: str
    business_key: str
    timestamp: int
    block_number: int

class UpdatePatientRequest(BaseModel):
    payload: str

class PatientResponse(BaseModel):
    primary_key: str
    business_key: str
    timestamp: int
    active: bool
    provider_ref: Optional[str] = None

class AuthorizeProviderRequest(BaseModel):
    principal: str

class AssignProviderRequest(BaseModel):
    provider: str

class MemberIdResponse(BaseModel):
    member_id: str
    registered: bool
    primary_key: Optional[str] = None

class PaymentRequest(BaseModel):
    payment_id: str
    item_id: str
    item_type: str = "bill"
    member_id: str = ""
    amount: int = Field(..., description="Attached value in the smallest currency unit")

    class Config:
        json_schema_extra = {
            "example": {
                "payment_id": "P1",
                "item_id": "I1",
                "item_type": "bill",
                "member_id": "MEM1",
                "amount": 100
            }
        }

class PaymentResponse(BaseModel):
    item_id: str
    item_type: str
    payer: str
    amount: int
    timestamp: int
    completed: bool

class StatsResponse(BaseModel):
    count_processed: int
    amount_processed: int
    balance: int

class WithdrawalResponse(BaseModel):
    recipient: str
    amount: int

class AckResponse(BaseModel):
    success: bool = True

class EnrollRequest(BaseModel):
    member_id: Optional[str] = None
    patient_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    blood_type: Optional[str] = None

class EmergencyContact(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    relationship: Optional[str] = None

class UpdateProfileRequest(BaseModel):
    emergency_contact: Optional[EmergencyContact] = None

class HealthResponse(BaseModel):
    status: str
    version: str
    health_score: float
    total_records: int
    payments_processed: int
    escrow_balance: int
    block_number: int
    escrow_reconciles: bool
    ledger_integrity: bool

# ============================================
# APPLICATION LIFECYCLE
# ============================================

class AppState:
    """Global application state."""
    def __init__(self, config: Optional[SystemConfig] = None):
        self.config = config or SYSTEM_CONFIG
        self.chain = SecureHealthChain(self.config)
        self.chain.subscribe(record_audit_event)
        self.directory = PatientDirectory(self.chain)

    def shutdown(self):
        self.directory.close()
        self.chain.shutdown()

app_state = AppState()

def reset_app_state(config: Optional[SystemConfig] = None) -> AppState:
    """Replace the deployment behind the API with a fresh one."""
    global app_state
    app_state.shutdown()
    app_state = AppState(config)
    return app_state

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("🚀 SecureHealth Chain starting...")
    logger.info(f"✅ Custodian: {app_state.chain.custodian}")
    yield
    logger.info("🛑 SecureHealth Chain shutting down...")
    app_state.shutdown()

# ============================================
# FASTAPI APPLICATION
# ============================================

app = FastAPI(
    title="SecureHealth Chain",
    description="Patient registration and payment ledger",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

def _endpoint(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)

@app.middleware("http")
async def observe_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    record_api_request(_endpoint(request), request.method, response.status_code, time.perf_counter() - started)
    return response

# ============================================
# API ENDPOINTS
# ============================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint."""
    return {
        "service": "SecureHealth Chain",
        "version": "1.0.0",
        "status": "operational"
    }

@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check():
    """System health check."""
    health = app_state.chain.get_system_health()
    update_system_health(health)

    healthy = health['ledger_integrity'] and health['escrow_reconciles']
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version="1.0.0",
        health_score=health['health_score'],
        total_records=health['total_records'],
        payments_processed=health['payments_processed'],
        escrow_balance=health['escrow_balance'],
        block_number=health['block_number'],
        escrow_reconciles=health['escrow_reconciles'],
        ledger_integrity=health['ledger_integrity']
    )

@app.post("/api/v1/patients", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED, tags=["Patients"])
def register_patient(request: RegisterPatientRequest, x_principal: str = Header(..., alias="X-Principal")):
    """
    Register the calling principal as a patient.

    Rejected when the member ID or payload is empty, the caller already has a
    record, or the member ID belongs to someone else.
    """
    receipt = app_state.chain.register(x_principal, request.member_id, request.payload)
    return RegistrationResponse(**receipt)

@app.get("/api/v1/patients/{primary_key}", response_model=PatientResponse, tags=["Patients"])
def get_patient(primary_key: str):
    return PatientResponse(**app_state.chain.get(primary_key))

@app.put("/api/v1/patients/me", response_model=AckResponse, tags=["Patients"])
def update_patient(request: UpdatePatientRequest, x_principal: str = Header(..., alias="X-Principal")):
    """Replace the caller's own payload."""
    app_state.chain.update(x_principal, request.payload)
    return AckResponse()

@app.post("/api/v1/providers", response_model=AckResponse, status_code=status.HTTP_201_CREATED, tags=["Providers"])
def authorize_provider(request: AuthorizeProviderRequest, x_principal: str = Header(..., alias="X-Principal")):
    """Grant the provider role (custodian only)."""
    app_state.chain.authorize_provider(x_principal, request.principal)
    return AckResponse()

@app.post("/api/v1/patients/{primary_key}/provider", response_model=AckResponse, tags=["Providers"])
def assign_provider(
    primary_key: str,
    request: AssignProviderRequest,
    x_principal: str = Header(..., alias="X-Principal")
):
    """Assign an authorized provider to a patient (custodian only)."""
    app_state.chain.assign_provider(x_principal, primary_key, request.provider)
    return AckResponse()

@app.get("/api/v1/member-ids/{member_id}", response_model=MemberIdResponse, tags=["Patients"])
def check_member_id(member_id: str):
    primary_key = app_state.chain.lookup_business_key(member_id)
    return MemberIdResponse(member_id=member_id, registered=primary_key is not None, primary_key=primary_key)

@app.post("/api/v1/payments", response_model=AckResponse, status_code=status.HTTP_201_CREATED, tags=["Payments"])
def process_payment(request: PaymentRequest, x_principal: str = Header(..., alias="X-Principal")):
    """
    Pay for an item.

    The amount is held in escrow until the custodian withdraws it. Each item
    can be paid once.
    """
    app_state.chain.process_payment(
        x_principal,
        request.payment_id,
        request.item_id,
        request.item_type,
        request.member_id,
        request.amount
    )
    return AckResponse()

@app.get("/api/v1/payments/stats", response_model=StatsResponse, tags=["Payments"])
def payment_stats():
    return StatsResponse(**app_state.chain.get_stats())

@app.get("/api/v1/payments/{payment_id}", response_model=PaymentResponse, tags=["Payments"])
def get_payment(payment_id: str):
    return PaymentResponse(**app_state.chain.get_payment(payment_id))

@app.post("/api/v1/withdrawals", response_model=WithdrawalResponse, tags=["Payments"])
def withdraw(x_principal: str = Header(..., alias="X-Principal")):
    """Move the escrow balance to the custodian."""
    return WithdrawalResponse(**app_state.chain.withdraw(x_principal))

@app.get("/api/v1/events", tags=["Audit"])
def audit_events(kind: Optional[str] = None, since: int = 0) -> List[Dict[str, Any]]:
    """Ordered audit log, optionally filtered by event kind."""
    event_kind = None
    if kind:
        try:
            event_kind = AuditEventKind(kind)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown event kind: {kind}"
            )
    return [event.to_dict() for event in app_state.chain.audit_events(event_kind, since)]

# ---------- patient directory ----------

@app.post("/api/v1/directory/patients", status_code=status.HTTP_201_CREATED, tags=["Directory"])
def enroll_patient(request: EnrollRequest, x_principal: str = Header(..., alias="X-Principal")):
    """Validate, register on the ledger and store the profile."""
    return app_state.directory.enroll(
        x_principal,
        request.member_id,
        request.patient_name,
        request.date_of_birth,
        request.blood_type
    )

@app.get("/api/v1/directory/patients", tags=["Directory"])
def list_directory(page: int = 1, limit: int = 10):
    return app_state.directory.list(page, limit)

@app.get("/api/v1/directory/patients/search", tags=["Directory"])
def search_directory(q: str = ""):
    return app_state.directory.search(q)

@app.get("/api/v1/directory/patients/{member_id}", tags=["Directory"])
def find_in_directory(member_id: str):
    return app_state.directory.find(member_id)

@app.put("/api/v1/directory/patients/{member_id}", tags=["Directory"])
def update_directory_profile(member_id: str, request: UpdateProfileRequest):
    contact = request.emergency_contact.model_dump(exclude_none=True) if request.emergency_contact else None
    return app_state.directory.update_profile(member_id, contact)

@app.delete("/api/v1/directory/patients/{member_id}", tags=["Directory"])
def deactivate_directory_profile(member_id: str, reason: Optional[str] = None):
    """Soft delete from the directory; the ledger record is untouched."""
    app_state.directory.deactivate(member_id, reason)
    return {"success": True, "message": "Patient deactivated successfully"}

@app.get("/api/v1/directory/stats", tags=["Directory"])
def directory_stats():
    return app_state.directory.stats()

@app.get("/api/v1/directory/events", tags=["Directory"])
def directory_events(type: Optional[str] = None, limit: int = 50):
    return app_state.directory.history(type, limit)

@app.get("/metrics", tags=["Observability"])
def metrics():
    """Prometheus metrics endpoint."""
    update_system_health(app_state.chain.get_system_health())
    return Response(
        content=generate_latest(metrics_registry),
        media_type=CONTENT_TYPE_LATEST
    )

# ============================================
# ERROR HANDLERS
# ============================================

@app.exception_handler(InvariantViolation)
async def invariant_violation_handler(request: Request, exc: InvariantViolation):
    logger.error(f"Invariant violation on {request.method} {request.url.path}: {exc.kind}: {exc.reason}")
    record_rejection(_endpoint(request), exc.kind)
    return JSONResponse(
        status_code=ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST),
        content={"error": exc.kind, "detail": exc.reason}
    )

@app.exception_handler(DirectoryError)
async def directory_error_handler(request: Request, exc: DirectoryError):
    logger.warning(f"Directory request rejected: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": "DirectoryError", "detail": exc.message}
    )

@app.exception_handler(SystemCompromised)
async def system_compromised_handler(request: Request, exc: SystemCompromised):
    logger.critical(f"System compromised: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "SystemCompromised", "detail": "Internal server error"}
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "shc_main_api:app",
        host=SYSTEM_CONFIG.api_host,
        port=SYSTEM_CONFIG.api_port,
        log_level=SYSTEM_CONFIG.log_level.lower()
    )
