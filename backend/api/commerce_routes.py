# api/commerce_routes.py
# ============================================================================
# ORDERS / SUBSCRIPTIONS / SUBMISSIONS / PACKAGES / UPLOADS
# ============================================================================

import re
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Request, Response
from pydantic import BaseModel, ConfigDict, Field

from api.auth import get_actor, get_admin
from pipeline.errors import ValidationError
from schemas.commerce import Actor, BillingCycle, BillingInterval, PlanName, PlanType, SubmissionFile
from services.commerce_service import CommerceService, OrderDraft, PackageDraft, SubscriptionDraft
from storage.blob_storage import IUploadUrlGenerator

router = APIRouter(tags=["commerce"])

# a run of capitals is one word: fileURLs -> file_urls
_CAMEL = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def snake_keys(body: Dict[str, Any]) -> Dict[str, Any]:
    """``{"fileUrls": ...}`` → ``{"file_urls": ...}``; snake_case keys pass through."""
    return {_CAMEL.sub("_", key).lower(): value for key, value in body.items()}


def get_commerce(request: Request) -> CommerceService:
    return request.app.state.commerce


def get_uploads(request: Request) -> IUploadUrlGenerator:
    return request.app.state.uploads


def _dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json")


def _patch_body(body: Any) -> Dict[str, Any]:
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object")
    return snake_keys(body)


# ============================================================================
# REQUEST MODELS
# ============================================================================

class _Camel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class OrderCreateRequest(_Camel):
    plan_id: str = Field(..., alias="planId")
    name: str
    email: str
    phone: str = ""
    description: str = ""
    features: List[str] = Field(default_factory=list)
    file_urls: List[str] = Field(default_factory=list, alias="fileUrls")
    links: List[str] = Field(default_factory=list)
    price: Optional[float] = None


class SubscriptionCreateRequest(_Camel):
    plan_id: str = Field(..., alias="planId")
    plan_name: PlanName = Field(..., alias="planName")
    interval: Optional[BillingInterval] = None
    name: str
    email: str
    phone: str = ""
    description: str = ""
    features: List[str] = Field(default_factory=list)
    file_urls: List[str] = Field(default_factory=list, alias="fileUrls")
    links: List[str] = Field(default_factory=list)


class DeliveredFile(_Camel):
    file_id: str = Field(..., alias="fileId")
    file_url: str = Field(..., alias="fileUrl")
    filename: str
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")


class DeliverRequest(_Camel):
    files: List[DeliveredFile] = Field(..., min_length=1)
    complete: bool = True


class PackageCreateRequest(_Camel):
    title: str
    price: Optional[float] = None
    billing_cycle: BillingCycle = Field(default=BillingCycle.ONE_TIME, alias="billingCycle")
    description: str = ""
    features: List[str] = Field(default_factory=list)
    popular: bool = False
    plan_type: PlanType = Field(default=PlanType.DEVELOPMENT, alias="planType")


class PresignRequest(_Camel):
    file_name: str = Field(..., alias="fileName", min_length=1)
    content_type: str = Field(default="application/octet-stream", alias="contentType")


# ============================================================================
# ORDERS
# ============================================================================

@router.post("/orders", status_code=201)
async def create_order(
    body: OrderCreateRequest,
    actor: Actor = Depends(get_actor),
    commerce: CommerceService = Depends(get_commerce),
):
    draft = OrderDraft(**body.model_dump())
    return _dump(await commerce.create_order(actor, draft))


@router.get("/orders")
async def list_orders(actor: Actor = Depends(get_actor), commerce: CommerceService = Depends(get_commerce)):
    return [_dump(o) for o in await commerce.list_orders(actor)]


@router.get("/orders/{order_id}")
async def get_order(order_id: str, actor: Actor = Depends(get_actor), commerce: CommerceService = Depends(get_commerce)):
    return _dump(await commerce.get_order(actor, order_id))


@router.patch("/orders/{order_id}")
async def update_order(
    order_id: str,
    body: Any = Body(...),
    actor: Actor = Depends(get_actor),
    commerce: CommerceService = Depends(get_commerce),
):
    return _dump(await commerce.update_order(actor, order_id, _patch_body(body)))


@router.delete("/orders/{order_id}", status_code=204)
async def delete_order(order_id: str, actor: Actor = Depends(get_actor), commerce: CommerceService = Depends(get_commerce)):
    await commerce.delete_order(actor, order_id)
    return Response(status_code=204)


# ============================================================================
# SUBMISSIONS
# ============================================================================

@router.post("/orders/{order_id}/submissions", status_code=201)
async def deliver_files(
    order_id: str,
    body: DeliverRequest,
    actor: Actor = Depends(get_admin),
    commerce: CommerceService = Depends(get_commerce),
):
    files = [SubmissionFile(**f.model_dump()) for f in body.files]
    submission, order = await commerce.deliver_files(actor, order_id, files, complete=body.complete)
    return {"submission": _dump(submission), "order": _dump(order)}


@router.get("/orders/{order_id}/submissions")
async def get_submission(order_id: str, actor: Actor = Depends(get_actor), commerce: CommerceService = Depends(get_commerce)):
    return _dump(await commerce.get_submission(actor, order_id))


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

@router.post("/subscriptions", status_code=201)
async def create_subscription(
    body: SubscriptionCreateRequest,
    actor: Actor = Depends(get_actor),
    commerce: CommerceService = Depends(get_commerce),
):
    draft = SubscriptionDraft(**body.model_dump())
    return _dump(await commerce.create_subscription(actor, draft))


@router.get("/subscriptions")
async def list_subscriptions(actor: Actor = Depends(get_actor), commerce: CommerceService = Depends(get_commerce)):
    return [_dump(s) for s in await commerce.list_subscriptions(actor)]


@router.get("/subscriptions/{subscription_id}")
async def get_subscription(
    subscription_id: str,
    actor: Actor = Depends(get_actor),
    commerce: CommerceService = Depends(get_commerce),
):
    return _dump(await commerce.get_subscription(actor, subscription_id))


@router.patch("/subscriptions/{subscription_id}")
async def update_subscription(
    subscription_id: str,
    body: Any = Body(...),
    actor: Actor = Depends(get_actor),
    commerce: CommerceService = Depends(get_commerce),
):
    return _dump(await commerce.update_subscription(actor, subscription_id, _patch_body(body)))


@router.delete("/subscriptions/{subscription_id}", status_code=204)
async def delete_subscription(
    subscription_id: str,
    actor: Actor = Depends(get_actor),
    commerce: CommerceService = Depends(get_commerce),
):
    await commerce.delete_subscription(actor, subscription_id)
    return Response(status_code=204)


# ============================================================================
# ADMIN LISTINGS
# ============================================================================

@router.get("/admin/orders")
async def admin_list_orders(actor: Actor = Depends(get_admin), commerce: CommerceService = Depends(get_commerce)):
    return [_dump(o) for o in await commerce.list_orders(actor, everyone=True)]


@router.get("/admin/subscriptions")
async def admin_list_subscriptions(actor: Actor = Depends(get_admin), commerce: CommerceService = Depends(get_commerce)):
    return [_dump(s) for s in await commerce.list_subscriptions(actor, everyone=True)]


# ============================================================================
# PACKAGES
# ============================================================================

@router.get("/packages")
async def list_packages(plan_type: Optional[PlanType] = None, commerce: CommerceService = Depends(get_commerce)):
    return [_dump(p) for p in await commerce.list_packages(plan_type)]


@router.get("/packages/{package_id}")
async def get_package(package_id: str, commerce: CommerceService = Depends(get_commerce)):
    return _dump(await commerce.get_package(package_id))


@router.post("/packages", status_code=201)
async def create_package(
    body: PackageCreateRequest,
    actor: Actor = Depends(get_admin),
    commerce: CommerceService = Depends(get_commerce),
):
    draft = PackageDraft.model_validate(body.model_dump())
    return _dump(await commerce.create_package(actor, draft))


@router.patch("/packages/{package_id}")
async def update_package(
    package_id: str,
    body: Any = Body(...),
    actor: Actor = Depends(get_admin),
    commerce: CommerceService = Depends(get_commerce),
):
    return _dump(await commerce.update_package(actor, package_id, _patch_body(body)))


@router.delete("/packages/{package_id}", status_code=204)
async def delete_package(package_id: str, actor: Actor = Depends(get_admin), commerce: CommerceService = Depends(get_commerce)):
    await commerce.delete_package(actor, package_id)
    return Response(status_code=204)


# ============================================================================
# UPLOADS
# ============================================================================

@router.post("/uploads/presign")
async def presign_upload(
    body: PresignRequest,
    actor: Actor = Depends(get_actor),
    uploads: IUploadUrlGenerator = Depends(get_uploads),
):
    ticket = await uploads.create_upload_url(body.file_name, body.content_type)
    return {
        "uploadUrl": ticket.upload_url,
        "key": ticket.key,
        "fileUrl": ticket.file_url,
        "expiresIn": ticket.expires_in,
    }
