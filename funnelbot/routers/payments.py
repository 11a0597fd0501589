from fastapi import APIRouter, Depends, Request, status

from funnelbot.container import ServiceContainer, get_service_container
from funnelbot.schemas.broadcast_schemas import ConfirmPaymentRequest
from funnelbot.utils.responses import ResponseBuilder

payments_router = APIRouter()


@payments_router.post(
    "/manual",
    status_code=status.HTTP_201_CREATED,
    summary="Confirm a manual payment",
    description="Mark the user as paid, close active offers and cancel pending reminders.",
)
async def confirm_manual_payment(
    request: Request,
    payload: ConfirmPaymentRequest,
    container: ServiceContainer = Depends(get_service_container),
):
    payment = await container.payments.confirm_payment(
        payload.telegram_id, payload.amount, payload.currency
    )
    return ResponseBuilder.success(
        request=request,
        data={
            "paymentId": payment.id,
            "userId": payment.user_id,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "paidAt": payment.paid_at.isoformat() if payment.paid_at else None,
        },
        message="Payment confirmed",
        status_code=status.HTTP_201_CREATED,
    )
