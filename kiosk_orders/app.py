"""
Order Lifecycle Service - FastAPI Server

Key Endpoints:
- POST   /orders
- GET    /orders
- GET    /orders/{order_id}
- PATCH  /orders/{order_id}
- DELETE /orders/{order_id}
- GET    /orders/{order_id}/transitions
- POST   /orders/{order_id}/status
- POST   /orders/{order_id}/cancel
- POST   /orders/{order_id}/dispute
- POST   /orders/{order_id}/restore-inventory
- POST   /orders/{order_id}/items/{item_id}/{action}
- POST   /webhooks/payment
- POST   /webhooks/paystack
- GET    /admin/orders/auto-complete
- POST   /admin/orders/auto-complete
- GET    /admin/audit-logs

Callers identify themselves with X-Actor-Id / X-Actor-Role headers; session
handling lives in the gateway in front of this service. /webhooks/payment accepts
either a system/admin actor or an X-Webhook-Signature HMAC over the raw body.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from . import config, redis_utils
from .commission import CommissionCalculator, StaticCommissionRates
from .compensation import CompensationEngine
from .db import supabase_client
from .db.repositories.commission_repo import SupabaseCommissionRates
from .db.repositories.inventory_repo import InMemoryInventory, SupabaseInventory
from .disputes import DisputeWindowEnforcer
from .fulfillment import ITEM_ACTIONS, FulfillmentTracker
from .lifecycle import OrderLifecycle
from .models import Actor, CreateOrderInput, LifecycleResult
from .order_state_machine import (
    ActorRole,
    OrderStatus,
    StateTransition,
    normalize_order_status,
    normalize_payment_status,
)
from .orders_repository import (
    InMemoryOrderStore,
    OrderLockTimeoutError,
    StorageUnavailableError,
    is_visible_to_vendor,
)
from .payment_webhook import (
    PaymentWebhook,
    PaymentWebhookHandler,
    parse_paystack_event,
    verify_signature,
)
from .transaction_trust import audit_logger

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# ============================================================================
# REQUEST MODELS
# ============================================================================

class StatusUpdateRequest(BaseModel):
    status: str = Field(..., description="Target order status (legacy spellings accepted)")
    courier_provider: Optional[str] = None
    courier_reference: Optional[str] = None
    reason: Optional[str] = None


class OrderDetailsRequest(BaseModel):
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    payment_status: Optional[str] = None


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class ItemActionRequest(BaseModel):
    courier_provider: Optional[str] = None
    courier_reference: Optional[str] = None


# ============================================================================
# WIRING
# ============================================================================

def build_lifecycle() -> OrderLifecycle:
    """Pick storage and collaborators from configuration"""
    if redis_utils.redis_client is not None:
        store = redis_utils.RedisOrderStore()
        logger.info("Using Redis order store")
    else:
        store = InMemoryOrderStore()
        logger.warning("REDIS_URL not set; orders are kept in process memory")

    inventory = SupabaseInventory() if supabase_client.is_write_enabled() else InMemoryInventory()
    rates = SupabaseCommissionRates() if supabase_client.is_enabled() else StaticCommissionRates()
    return OrderLifecycle(
        store,
        audit=audit_logger,
        inventory=inventory,
        commission=CommissionCalculator(rates),
    )


def raise_for_result(result: LifecycleResult) -> LifecycleResult:
    if not result.success:
        raise HTTPException(status_code=result.status_code or 400, detail=result.error)
    return result


def get_actor(x_actor_id: Optional[str], x_actor_role: Optional[str], x_actor_name: Optional[str] = None) -> Actor:
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=401, detail="Actor headers required")
    try:
        return Actor(id=x_actor_id, role=x_actor_role, name=x_actor_name)
    except ValidationError:
        raise HTTPException(status_code=400, detail=f"Unknown actor role: {x_actor_role}")


def require_admin(actor: Actor) -> None:
    if actor.role != ActorRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")


def create_app(
    lifecycle: Optional[OrderLifecycle] = None,
    webhook_secret: Optional[str] = None,
) -> FastAPI:
    lifecycle = lifecycle or build_lifecycle()
    secret = config.PAYSTACK_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
    store = lifecycle.store
    fulfillment = FulfillmentTracker(lifecycle)
    disputes = DisputeWindowEnforcer(lifecycle)
    compensation = CompensationEngine(lifecycle)
    payments = PaymentWebhookHandler(lifecycle)

    app = FastAPI(
        title="Order Lifecycle Service",
        description="Multi-vendor order lifecycle, fulfillment and dispute handling",
        version="1.0.0",
    )
    app.state.lifecycle = lifecycle

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StorageUnavailableError)
    async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError):
        logger.error(f"Storage unavailable for {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Order storage unavailable"})

    @app.exception_handler(OrderLockTimeoutError)
    async def order_busy_handler(request: Request, exc: OrderLockTimeoutError):
        logger.warning(f"Order lock busy for {request.url.path}: {exc}")
        return JSONResponse(status_code=409, content={"detail": "Order is being updated; retry"})

    # ------------------------------------------------------------------------
    # ORDERS
    # ------------------------------------------------------------------------

    @app.post("/orders", status_code=201)
    async def create_order(request: CreateOrderInput):
        result = lifecycle.create_order(request)
        return result.to_dict()

    @app.get("/orders")
    async def list_orders(
        buyer_id: Optional[str] = None,
        vendor_id: Optional[str] = None,
        status: Optional[str] = None,
        payment_status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ):
        try:
            status_filter = normalize_order_status(status) if status else None
            payment_filter = normalize_payment_status(payment_status) if payment_status else None
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

        if vendor_id is not None:
            orders = store.list_orders_for_vendor(
                vendor_id,
                status=status_filter,
                payment_status=payment_filter,
                limit=limit,
                offset=offset,
            )
        else:
            orders = store.list_orders(
                buyer_id=buyer_id,
                status=status_filter,
                payment_status=payment_filter,
                limit=limit,
                offset=offset,
            )
        return {
            "orders": [order.model_dump(mode="json") for order in orders],
            "count": len(orders),
        }

    @app.get("/orders/{order_id}")
    async def get_order(
        order_id: str,
        x_actor_id: Optional[str] = Header(None),
        x_actor_role: Optional[str] = Header(None),
    ):
        actor = get_actor(x_actor_id, x_actor_role)
        order = store.get(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")

        items = store.get_items(order_id)
        if actor.role == ActorRole.BUYER and order.buyer_id != actor.id:
            raise HTTPException(status_code=403, detail="Not authorized")
        if actor.role == ActorRole.VENDOR:
            items = store.get_vendor_items(order_id, actor.id)
            if not items or not is_visible_to_vendor(order):
                raise HTTPException(status_code=403, detail="Not authorized")

        return {
            "order": order.model_dump(mode="json"),
            "items": [item.model_dump(mode="json") for item in items],
            "disputes": [dispute.model_dump(mode="json") for dispute in store.get_disputes(order_id)],
            "allowed_transitions": [
                status.value
                for status in StateTransition.get_allowed_transitions_for_actor(order.status, actor.role)
            ],
        }

    @app.patch("/orders/{order_id}")
    async def update_order(
        order_id: str,
        request: OrderDetailsRequest,
        x_actor_id: Optional[str] = Header(None),
        x_actor_role: Optional[str] = Header(None),
    ):
        actor = get_actor(x_actor_id, x_actor_role)
        result = lifecycle.update_order_details(
            order_id,
            actor,
            tracking_number=request.tracking_number,
            notes=request.notes,
            payment_status=request.payment_status,
        )
        return raise_for_result(result).to_dict()

    @app.delete("/orders/{order_id}")
    async def delete_order(
        order_id: str,
        x_actor_id: Optional[str] = Header(None),
        x_actor_role: Optional[str] = Header(None),
    ):
        actor = get_actor(x_actor_id, x_actor_role)
        return raise_for_result(lifecycle.delete_order(order_id, actor)).to_dict()

    @app.get("/orders/{order_id}/transitions")
    async def get_transitions(
        order_id: str,
        x_actor_id: Optional[str] = Header(None),
        x_actor_role: Optional[str] = Header(None),
    ):
        actor = get_actor(x_actor_id, x_actor_role)
        order = store.get(order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return {
            "order_id": order_id,
            "status": order.status.value,
            "allowed": [
                status.value
                for status in StateTransition.get_allowed_transitions_for_actor(order.status, actor.role)
            ],
            "terminal": StateTransition.is_terminal_state(order.status),
        }

    @app.post("/orders/{order_id}/status")
    async def update_status(
        order_id: str,
        request: StatusUpdateRequest,
        x_actor_id: Optional[str] = Header(None),
        x_actor_role: Optional[str] = Header(None),
        x_actor_name: Optional[str] = Header(None),
    ):
        actor = get_actor(x_actor_id, x_actor_role, x_actor_name)
        try:
            target = normalize_order_status(request.status)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown order status: {request.status}")

        # Cancellation always compensates
        if target == OrderStatus.CANCELLED:
            return raise_for_result(compensation.cancel_order_with_compensation(order_id, actor)).to_dict()

        result = lifecycle.transition_order_status(
            order_id,
            target,
            actor,
            courier_provider=request.courier_provider,
            courier_reference=request.courier_reference,
            dispute_reason=request.reason,
        )
        return raise_for_result(result).to_dict()

    @app.post("/orders/{order_id}/cancel")
    async def cancel_order(
        order_id: str,
        x_actor_id: Optional[str] = Header(None),
        x_actor_role: Optional[str] = Header(None),
        x_actor_name: Optional[str] = Header(None),
    ):
        actor = get_actor(x_actor_id, x_actor_role, x_actor_name)
        result = compensation.cancel_order_with_compensation(order_id, actor)
        return raise_for_result(result).to_dict()

    @app.post("/orders/{order_id}/restore-inventory")
    async def restore_inventory(
        order_id: str,
        x_actor_id: Optional[str] = Header(None),
        x_actor_role: Optional[str] = Header(None),
    ):
        actor = get_actor(x_actor_id, x_actor_role)
        result = compensation.retry_inventory_restore(order_id, actor)
        return raise_for_result(result).to_dict()

    @app.post("/orders/{order_id}/dispute")
    async def dispute_order(
        order_id: str,
        request: DisputeRequest,
        x_actor_id: Optional[str] = Header(None),
        x_actor_role: Optional[str] = Header(None),
    ):
        actor = get_actor(x_actor_id, x_actor_role)
        if actor.role != ActorRole.BUYER:
            raise HTTPException(status_code=403, detail="Only buyers can dispute orders")
        result = disputes.raise_dispute(order_id, actor.id, request.reason)
        return raise_for_result(result).to_dict()

    @app.post("/orders/{order_id}/items/{item_id}/{action}")
    async def item_action(
        order_id: str,
        item_id: str,
        action: str,
        request: Optional[ItemActionRequest] = None,
        x_actor_id: Optional[str] = Header(None),
        x_actor_role: Optional[str] = Header(None),
        x_actor_name: Optional[str] = Header(None),
    ):
        actor = get_actor(x_actor_id, x_actor_role, x_actor_name)
        if action not in ITEM_ACTIONS:
            raise HTTPException(status_code=400, detail=f"Invalid action: {action}")
        request = request or ItemActionRequest()
        result = fulfillment.update_item_status(
            order_id,
            item_id,
            ITEM_ACTIONS[action],
            actor,
            courier_provider=request.courier_provider,
            courier_reference=request.courier_reference,
        )
        return raise_for_result(result).to_dict()

    # ------------------------------------------------------------------------
    # PAYMENT WEBHOOKS
    # ------------------------------------------------------------------------

    @app.post("/webhooks/payment")
    async def payment_webhook(
        request: Request,
        x_webhook_signature: Optional[str] = Header(None),
        x_actor_id: Optional[str] = Header(None),
        x_actor_role: Optional[str] = Header(None),
    ):
        raw_body = await request.body()
        if x_webhook_signature:
            if not verify_signature(raw_body, x_webhook_signature, secret):
                logger.error("Invalid payment webhook signature")
                raise HTTPException(status_code=401, detail="Invalid signature")
        else:
            actor = get_actor(x_actor_id, x_actor_role)
            if actor.role not in (ActorRole.SYSTEM, ActorRole.ADMIN):
                logger.warning(f"{actor.role.value}:{actor.id} tried to post a payment callback")
                raise HTTPException(status_code=403, detail="Only the payment gateway or an admin can post payments")

        try:
            webhook = PaymentWebhook.model_validate_json(raw_body)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=json.loads(e.json(include_url=False)))
        outcome = payments.handle_payment_webhook(webhook)
        return outcome.to_dict()

    @app.post("/webhooks/paystack")
    async def paystack_webhook(
        request: Request,
        x_paystack_signature: Optional[str] = Header(None),
    ):
        if not secret:
            logger.error("Paystack webhook received but no secret is configured")
            raise HTTPException(status_code=503, detail="Payment gateway not configured")

        raw_body = await request.body()
        if not verify_signature(raw_body, x_paystack_signature or "", secret):
            logger.error("Invalid Paystack signature")
            raise HTTPException(status_code=401, detail="Invalid signature")

        try:
            event = json.loads(raw_body)
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid payload")

        logger.info(f"Received Paystack event: {event.get('event')}")
        webhook = parse_paystack_event(event)
        if webhook is None:
            return {"received": True}
        outcome = payments.handle_payment_webhook(webhook)
        return {"received": True, "action": outcome.action.value}

    # ------------------------------------------------------------------------
    # ADMIN
    # ------------------------------------------------------------------------

    @app.get("/admin/orders/auto-complete")
    async def preview_auto_complete(
        x_actor_id: Optional[str] = Header(None),
        x_actor_role: Optional[str] = Header(None),
    ):
        require_admin(get_actor(x_actor_id, x_actor_role))
        eligible = disputes.get_orders_eligible_for_completion()
        return {
            "eligible_count": len(eligible),
            "orders": [
                {
                    "id": order.id,
                    "buyer_id": order.buyer_id,
                    "delivered_at": order.delivered_at.isoformat() if order.delivered_at else None,
                    "total": order.total,
                }
                for order in eligible
            ],
        }

    @app.post("/admin/orders/auto-complete")
    async def run_auto_complete(
        x_actor_id: Optional[str] = Header(None),
        x_actor_role: Optional[str] = Header(None),
    ):
        require_admin(get_actor(x_actor_id, x_actor_role))
        completed = disputes.auto_complete_delivered_orders()
        return {
            "success": True,
            "completed_count": completed,
            "message": f"Auto-completed {completed} orders",
        }

    @app.get("/admin/audit-logs")
    async def get_audit_logs(
        action: Optional[str] = None,
        target_id: Optional[str] = None,
        limit: int = 100,
        x_actor_id: Optional[str] = Header(None),
        x_actor_role: Optional[str] = Header(None),
    ):
        require_admin(get_actor(x_actor_id, x_actor_role))
        if not hasattr(lifecycle.audit, "query_logs"):
            raise HTTPException(status_code=501, detail="Audit backend does not support queries")
        filters = {key: value for key, value in {"action": action, "target_id": target_id}.items() if value}
        logs = lifecycle.audit.query_logs(filters, limit=limit)
        return {"logs": logs, "count": len(logs)}

    @app.get("/")
    async def health_check():
        """Health check endpoint."""
        if redis_utils.redis_client is None:
            redis_state = "not configured"
        else:
            redis_state = "connected" if redis_utils.check_redis_health() else "unavailable"
        return {
            "status": "running",
            "service": "Order Lifecycle Service",
            "version": "1.0.0",
            "storage": type(store).__name__,
            "redis": redis_state,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()


# ============================================================================
# RUN
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "kiosk_orders.app:app",
        host="0.0.0.0",
        port=config.ORDERS_SERVICE_PORT,
        reload=True,
        log_level="info"
    )
