"""License lifecycle and validation endpoints."""

from fastapi import APIRouter, HTTPException, status

from licensing.api.deps import Store, Validator
from licensing.models.license import (
    LicenseCreate,
    LicenseRead,
    LicenseStatusUpdate,
    ModuleKey,
    ModuleLicenseUpdate,
)
from licensing.services.license_store import LicenseExists, LicenseMissing
from licensing.services.license_validator import ValidationResult

router = APIRouter(prefix="/licenses", tags=["licenses"])


@router.post(
    "",
    response_model=LicenseRead,
    status_code=status.HTTP_201_CREATED,
    summary="Create a tenant license",
)
async def create_license(body: LicenseCreate, store: Store) -> LicenseRead:
    try:
        return await store.create_license(body)
    except LicenseExists as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.get("/{tenant_id}", response_model=LicenseRead)
async def get_license(tenant_id: str, store: Store) -> LicenseRead:
    license = await store.get_license(tenant_id)
    if license is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="License not found")
    return license


@router.patch("/{tenant_id}/status", response_model=LicenseRead)
async def update_license_status(
    tenant_id: str, body: LicenseStatusUpdate, store: Store
) -> LicenseRead:
    """Renew, suspend, cancel or expire a license."""
    try:
        return await store.set_status(tenant_id, body.status, body.reason)
    except LicenseMissing as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.put("/{tenant_id}/modules/{module_key}", response_model=LicenseRead)
async def update_module(
    tenant_id: str,
    module_key: ModuleKey,
    body: ModuleLicenseUpdate,
    store: Store,
) -> LicenseRead:
    """Add or change a module entitlement (upgrade, downgrade, toggle, renew)."""
    try:
        return await store.update_module(tenant_id, module_key, body)
    except LicenseMissing as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get(
    "/{tenant_id}/modules/{module_key}/validate",
    response_model=ValidationResult,
)
async def validate_module(
    tenant_id: str,
    module_key: str,
    validator: Validator,
    skip_cache: bool = False,
) -> ValidationResult:
    """Access decision for one module. Denials are 200 with ``valid=false``."""
    return await validator.validate_module_access(tenant_id, module_key, skip_cache=skip_cache)
