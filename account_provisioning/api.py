"""
FastAPI REST API Module

Exposes the provisioning core to the surrounding UI/auth layer:
status queries, public profile data, one-time provisioning and the
operator-only regenerate endpoint. Runs on port 8090.
"""

import hmac
from typing import Optional
from fastapi import FastAPI, HTTPException, Depends, Header, Response, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .audit import AuditTrail
from .config import ProvisioningConfig, get_config
from .errors import (
    AllocationExhausted, AlreadyProvisioned, ConcurrentUpdateConflict, IdentityNotFound,
    ProvisioningError
)
from .identifiers import AccountNumberAllocator
from .logging_config import get_logger, setup_logging
from .profiles import ProfileRegistry
from .provisioning import OnboardingResult, ProvisioningService
from .status import ProvisioningStatus, StatusQuery
from .storage import StorageInterface, create_storage


logger = get_logger("provisioning.api")


# Pydantic models for API requests/responses
class RegisterProfileRequest(BaseModel):
    identity_id: str = Field(..., min_length=1, description="Handle from the authentication system")


class RegenerateRequest(BaseModel):
    operator_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, description="Why the recovery is needed (audited)")


class StatusResponse(BaseModel):
    identity_id: str
    provisioned: bool
    status: str


class PublicProfileResponse(BaseModel):
    identity_id: str
    account_number: str
    public_key: str
    wallet_address: str
    provisioned_at: Optional[str] = None


class OnboardingResponse(PublicProfileResponse):
    private_key: str = Field(..., description="Shown once. It cannot be retrieved again.")

    @classmethod
    def from_result(cls, result: OnboardingResult) -> 'OnboardingResponse':
        return cls(private_key=result.private_key.reveal(), **result.public_fields())


class ProvisioningSystem:
    """Provisioning core with all components wired to one storage backend"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[ProvisioningConfig] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(
            self.config.database_url, timeout=self.config.database_timeout
        )

        self.audit_trail = AuditTrail(self.storage) if self.config.enable_audit_logging else None
        self.registry = ProfileRegistry(self.storage, self.audit_trail)
        self.allocator = AccountNumberAllocator(
            self.registry, max_attempts=self.config.allocation_max_attempts
        )
        self.provisioning_service = ProvisioningService(
            self.registry, self.allocator, self.audit_trail
        )
        self.status_query = StatusQuery(self.registry)


# Global provisioning system, created on first request
provisioning_system: Optional[ProvisioningSystem] = None


def get_provisioning_system() -> ProvisioningSystem:
    global provisioning_system
    if provisioning_system is None:
        provisioning_system = ProvisioningSystem()
    return provisioning_system


def _http_error(error: ProvisioningError) -> HTTPException:
    """Map a provisioning failure to an HTTP error"""
    if isinstance(error, (AlreadyProvisioned, ConcurrentUpdateConflict)):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(error, IdentityNotFound):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, AllocationExhausted):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=status_code, detail={"code": error.code, "message": str(error)})


def require_operator(
    x_operator_key: Optional[str] = Header(None),
    system: ProvisioningSystem = Depends(get_provisioning_system)
) -> None:
    """Gate for privileged endpoints. Disabled entirely when no key is configured."""
    expected = system.config.operator_api_key
    if not expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator endpoints are disabled")
    if not x_operator_key or not hmac.compare_digest(x_operator_key.encode(), expected.encode()):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid operator key")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Account Provisioning API",
        description="One-time account number and key pair provisioning",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "account_provisioning_api",
            "version": __version__
        }

    @app.post("/profiles", status_code=status.HTTP_201_CREATED)
    def register_profile(
        request: RegisterProfileRequest,
        system: ProvisioningSystem = Depends(get_provisioning_system)
    ):
        """Create an unprovisioned profile (registration collaborator hook)"""
        profile = system.registry.register(request.identity_id)
        return {
            "identity_id": profile.identity_id,
            "provisioned": profile.is_provisioned,
            "created_at": profile.created_at.isoformat()
        }

    @app.get("/profiles/{identity_id}/status", response_model=StatusResponse)
    def get_status(
        identity_id: str,
        system: ProvisioningSystem = Depends(get_provisioning_system)
    ):
        """Is this identity provisioned?"""
        current = system.status_query.status(identity_id)
        return StatusResponse(
            identity_id=identity_id,
            provisioned=current is ProvisioningStatus.PROVISIONED,
            status=current.value
        )

    @app.get("/profiles/{identity_id}", response_model=PublicProfileResponse)
    def get_public_data(
        identity_id: str,
        system: ProvisioningSystem = Depends(get_provisioning_system)
    ):
        """Public fields of a provisioned identity"""
        public = system.status_query.public_data(identity_id)
        if public is None:
            raise HTTPException(status_code=404, detail="No provisioned profile for this identity")
        return PublicProfileResponse(**public.to_dict())

    @app.post(
        "/profiles/{identity_id}/provision",
        response_model=OnboardingResponse,
        status_code=status.HTTP_201_CREATED
    )
    def provision(
        identity_id: str,
        response: Response,
        system: ProvisioningSystem = Depends(get_provisioning_system)
    ):
        """Provision an identity. The private key in the response is never shown again."""
        try:
            result = system.provisioning_service.provision(identity_id)
        except ProvisioningError as e:
            raise _http_error(e)

        response.headers["Cache-Control"] = "no-store"
        return OnboardingResponse.from_result(result)

    @app.post(
        "/admin/profiles/{identity_id}/regenerate",
        response_model=OnboardingResponse,
        dependencies=[Depends(require_operator)]
    )
    def regenerate(
        identity_id: str,
        request: RegenerateRequest,
        response: Response,
        system: ProvisioningSystem = Depends(get_provisioning_system)
    ):
        """Operator recovery: replace an identity's account number and key pair"""
        try:
            result = system.provisioning_service.regenerate_for_recovery(
                identity_id, operator_id=request.operator_id, reason=request.reason
            )
        except ProvisioningError as e:
            raise _http_error(e)

        response.headers["Cache-Control"] = "no-store"
        return OnboardingResponse.from_result(result)

    @app.get("/audit/verify")
    def verify_audit_chain(system: ProvisioningSystem = Depends(get_provisioning_system)):
        """Verify the integrity of the audit chain"""
        if system.audit_trail is None:
            raise HTTPException(status_code=404, detail="Audit logging is disabled")
        return system.audit_trail.verify_integrity()

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "account_provisioning.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
