"""
Billing JSON API: purchases, payment verification, Paystack webhook, wallet, and
staff-only reconciliation actions. All business rules live in billing.services.
"""
import json
import logging
from functools import wraps

from django.conf import settings
from django.core.paginator import Paginator
from django.db.models import Q
from django.http import HttpResponse, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_http_methods

from billing import config
from billing.exceptions import BillingError, PurchaseValidationError, WebhookAuthenticationError
from billing.gateways.paystack import SIGNATURE_HEADER
from billing.gateways.registry import get_payment_gateway
from billing.models import Order, WalletLedgerEntry
from billing.services import network_service, wallet_service, webhook_service
from billing.services.settlement_service import get_pipeline

logger = logging.getLogger(__name__)


def error_response(exc: BillingError) -> JsonResponse:
    return JsonResponse(
        {"success": False, "error": {"code": exc.code, "message": exc.message, "context": exc.context}},
        status=exc.status_code,
    )


def _auth_error(status: int, code: str, message: str) -> JsonResponse:
    return JsonResponse({"success": False, "error": {"code": code, "message": message, "context": {}}}, status=status)


def billing_api(view):
    """Turn BillingError into the JSON error body. Anything else is a 500."""

    @wraps(view)
    def wrapper(request, *args, **kwargs):
        try:
            return view(request, *args, **kwargs)
        except BillingError as e:
            if e.status_code >= 500:
                logger.warning("billing_api: %s %s -> %s %s", request.method, request.path, e.code, e.message)
            return error_response(e)

    return wrapper


def login_required_json(view):
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return _auth_error(401, "UNAUTHORIZED", "Sign in to continue.")
        return view(request, *args, **kwargs)

    return wrapper


def staff_required_json(view):
    @wraps(view)
    def wrapper(request, *args, **kwargs):
        if not request.user.is_authenticated:
            return _auth_error(401, "UNAUTHORIZED", "Sign in to continue.")
        if not request.user.is_staff:
            return _auth_error(403, "FORBIDDEN", "Staff access required.")
        return view(request, *args, **kwargs)

    return wrapper


def _json_body(request) -> dict:
    if not request.body:
        return {}
    try:
        data = json.loads(request.body)
    except (ValueError, UnicodeDecodeError):
        raise PurchaseValidationError("Request body must be valid JSON.")
    if not isinstance(data, dict):
        raise PurchaseValidationError("Request body must be a JSON object.")
    return data


def _page_params(request):
    try:
        page = max(int(request.GET.get("page", 1)), 1)
        limit = int(request.GET.get("limit", config.WALLET_HISTORY_DEFAULT_LIMIT))
    except ValueError:
        raise PurchaseValidationError("page and limit must be integers.")
    return page, min(max(limit, 1), config.WALLET_HISTORY_MAX_LIMIT)


def _paginate(queryset, request, serialize):
    page_number, limit = _page_params(request)
    paginator = Paginator(queryset, limit)
    page = paginator.get_page(page_number)
    return {
        "success": True,
        "data": [serialize(item) for item in page.object_list],
        "pagination": {
            "page": page.number,
            "limit": limit,
            "total": paginator.count,
            "pages": paginator.num_pages,
        },
    }


def _iso(value):
    return value.isoformat() if value else None


def order_json(order: Order) -> dict:
    return {
        "orderId": order.pk,
        "reference": order.reference,
        "status": order.status,
        "paymentStatus": order.payment_status,
        "deliveryStatus": order.delivery_status,
        "paymentMethod": order.payment_method,
        "network": order.network,
        "dataAmount": order.data_amount,
        "recipientPhone": order.recipient_phone,
        "amount": str(order.amount),
        "retryCount": order.retry_count,
        "createdAt": _iso(order.created_at),
        "deliveredAt": _iso(order.delivered_at),
        "refundedAt": _iso(order.refunded_at),
    }


def admin_order_json(order: Order) -> dict:
    data = order_json(order)
    data.update({
        "gatewayReference": order.gateway_reference,
        "providerTransactionId": order.provider_transaction_id,
        "errorMessage": order.error_message,
        "refundReason": order.refund_reason,
    })
    return data


def ledger_json(entry: WalletLedgerEntry) -> dict:
    return {
        "reference": entry.reference,
        "type": entry.direction,
        "category": entry.category,
        "amount": str(entry.amount),
        "balanceBefore": str(entry.balance_before),
        "balanceAfter": str(entry.balance_after),
        "status": entry.status,
        "description": entry.description,
        "orderReference": entry.order.reference if entry.order_id else None,
        "createdAt": _iso(entry.created_at),
    }


def outcome_json(outcome, serialize=order_json) -> dict:
    body = {
        "success": outcome.success,
        "message": outcome.message,
        "phase": outcome.phase,
        "data": serialize(outcome.order),
    }
    if outcome.new_balance is not None:
        body["newBalance"] = str(outcome.new_balance)
    return body


def _mask_phone(phone: str) -> str:
    if len(phone) <= 6:
        return phone
    return f"{phone[:5]}{'*' * (len(phone) - 8)}{phone[-3:]}"


def tracking_json(order: Order) -> dict:
    """Public projection: no amounts, phone masked."""
    return {
        "reference": order.reference,
        "status": order.status,
        "deliveryStatus": order.delivery_status,
        "network": order.network,
        "dataAmount": order.data_amount,
        "recipientPhone": _mask_phone(order.recipient_phone),
        "createdAt": _iso(order.created_at),
        "deliveredAt": _iso(order.delivered_at),
    }


def _owns(request, order: Order) -> bool:
    return request.user.is_authenticated and (order.user_id == request.user.pk or request.user.is_staff)


# --- Purchase -----------------------------------------------------------------


@require_http_methods(["POST"])
@billing_api
def initialize_purchase(request):
    """
    POST /api/purchase/initialize
    Body: bundleId, recipientPhone, paymentMethod (card | mobile_money), email (guests).
    Returns authorizationUrl for the Paystack payment page.
    """
    body = _json_body(request)
    order, init = get_pipeline().initialize_purchase(
        request.user,
        body.get("bundleId"),
        body.get("recipientPhone"),
        body.get("paymentMethod"),
        email=body.get("email"),
        callback_url=f"{settings.FRONTEND_URL}/payment/callback",
    )
    return JsonResponse({
        "success": True,
        "message": "Payment initialized",
        "data": {
            "authorizationUrl": init.authorization_url,
            "accessCode": init.access_code,
            "gatewayReference": init.gateway_reference,
            "reference": order.reference,
            "orderId": order.pk,
        },
    })


@require_http_methods(["GET"])
@billing_api
def verify_purchase(request, reference):
    """
    GET /api/purchase/verify/<reference>. Idempotent; returns the order projection.
    Callers that do not own the order see the phone masked and no amount.
    """
    outcome = get_pipeline().verify_payment(reference)
    if _owns(request, outcome.order):
        return JsonResponse(outcome_json(outcome))
    return JsonResponse(outcome_json(outcome, serialize=tracking_json))


@require_http_methods(["GET"])
@login_required_json
@billing_api
def my_orders(request):
    orders = Order.objects.filter(user=request.user)
    status = request.GET.get("status")
    if status:
        orders = orders.filter(status=status)
    return JsonResponse(_paginate(orders, request, order_json))


@require_http_methods(["GET"])
@billing_api
def track_order(request, reference):
    """Public lookup by our reference or the gateway's."""
    order = Order.objects.filter(Q(reference=reference.upper()) | Q(gateway_reference=reference)).first()
    if order is None:
        return _auth_error(404, "NOT_FOUND", "Order not found.")
    return JsonResponse({"success": True, "data": tracking_json(order)})


@require_http_methods(["GET"])
@billing_api
def lookup_by_phone(request, phone):
    """Public lookup of the latest orders sent to one number."""
    if not network_service.is_valid_phone(phone):
        raise PurchaseValidationError("Enter a valid Ghana phone number.")
    orders = Order.objects.filter(recipient_phone=network_service.normalize_phone(phone))
    orders = orders.order_by("-created_at")[:config.PHONE_LOOKUP_LIMIT]
    return JsonResponse({"success": True, "data": [tracking_json(order) for order in orders]})


# --- Webhook --------------------------------------------------------------------


@csrf_exempt
@require_http_methods(["POST"])
def paystack_webhook(request):
    """
    POST /api/payments/webhook
    Verifies x-paystack-signature over the raw body, stores the event and queues it.
    200 once stored (duplicates included), 401 on bad signature, 400 on malformed JSON.
    """
    try:
        webhook_service.receive(request.body, request.META.get(SIGNATURE_HEADER, ""))
    except WebhookAuthenticationError:
        return HttpResponse(status=401)
    except PurchaseValidationError:
        return HttpResponse(status=400)
    return JsonResponse({"received": True})


# --- Wallet ------------------------------------------------------------------------


@require_http_methods(["POST"])
@login_required_json
@billing_api
def wallet_purchase(request):
    body = _json_body(request)
    outcome = get_pipeline().purchase_with_wallet(request.user, body.get("bundleId"), body.get("recipientPhone"))
    return JsonResponse(outcome_json(outcome))


@require_http_methods(["GET"])
@login_required_json
def wallet_balance(request):
    return JsonResponse({
        "success": True,
        "data": {"balance": str(wallet_service.balance_of(request.user)), "currency": config.CURRENCY},
    })


@require_http_methods(["GET"])
@login_required_json
@billing_api
def wallet_transactions(request):
    category = request.GET.get("category") or None
    direction = request.GET.get("type") or None
    if category and category not in WalletLedgerEntry.Category.values:
        raise PurchaseValidationError("Unknown category.", context={"allowed": WalletLedgerEntry.Category.values})
    if direction and direction not in WalletLedgerEntry.Direction.values:
        raise PurchaseValidationError("Unknown type.", context={"allowed": WalletLedgerEntry.Direction.values})
    entries = wallet_service.history(request.user, category=category, direction=direction)
    return JsonResponse(_paginate(entries, request, ledger_json))


@require_http_methods(["POST"])
@login_required_json
@billing_api
def wallet_topup(request):
    body = _json_body(request)
    entry, init = wallet_service.start_topup(
        request.user,
        body.get("amount"),
        get_payment_gateway(),
        callback_url=f"{settings.FRONTEND_URL}/wallet/callback",
    )
    return JsonResponse({
        "success": True,
        "message": "Top-up initialized",
        "data": {
            "authorizationUrl": init.authorization_url,
            "accessCode": init.access_code,
            "reference": entry.reference,
            "amount": str(entry.amount),
        },
    })


@require_http_methods(["GET"])
@login_required_json
@billing_api
def verify_wallet_topup(request, reference):
    entry = wallet_service.verify_topup(reference, get_payment_gateway(), user=request.user)
    completed = entry.status == WalletLedgerEntry.Status.COMPLETED
    return JsonResponse({
        "success": completed,
        "message": {
            WalletLedgerEntry.Status.COMPLETED: "Wallet funded.",
            WalletLedgerEntry.Status.FAILED: "Top-up payment failed.",
        }.get(entry.status, "Top-up payment is still pending."),
        "data": {
            "reference": entry.reference,
            "status": entry.status,
            "amount": str(entry.amount),
            "balance": str(wallet_service.balance_of(request.user)),
        },
    })


# --- Staff reconciliation -------------------------------------------------------------


@require_http_methods(["POST"])
@staff_required_json
@billing_api
def admin_retry_order(request, order_id):
    outcome = get_pipeline().retry_delivery(order_id)
    logger.info("admin: retry order=%s by=%s success=%s", order_id, request.user.pk, outcome.success)
    return JsonResponse(outcome_json(outcome, serialize=admin_order_json))


@require_http_methods(["POST"])
@staff_required_json
@billing_api
def admin_refund_order(request, order_id):
    body = _json_body(request)
    outcome = get_pipeline().refund_order(order_id, reason=str(body.get("reason") or ""))
    logger.info("admin: refund order=%s by=%s", order_id, request.user.pk)
    return JsonResponse(outcome_json(outcome, serialize=admin_order_json))


@require_http_methods(["GET"])
@staff_required_json
@billing_api
def admin_delivery_status(request, order_id):
    result = get_pipeline().query_delivery(order_id)
    return JsonResponse({
        "success": True,
        "data": {
            "delivered": result.success,
            "providerTransactionId": result.provider_transaction_id,
            "message": result.message,
            "raw": result.raw if isinstance(result.raw, (dict, list)) else None,
        },
    })


@require_http_methods(["GET"])
@staff_required_json
@billing_api
def admin_provider_balance(request):
    balance = get_pipeline().provider_balance()
    return JsonResponse({"success": True, "data": {"balance": str(balance.balance), "currency": balance.currency}})
