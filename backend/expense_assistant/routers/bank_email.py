import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Form, Request

from ..domain.entities import InboundEmail
from ..pipeline import ExpensePipeline
from ..schemas import EmailWebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/email", tags=["email"])


def get_email_pipeline(request: Request) -> ExpensePipeline:
    return request.app.state.email_pipeline


@router.get("/inbound")
def email_health() -> dict[str, str]:
    return {"status": "ok", "endpoint": "email", "time": datetime.now(timezone.utc).isoformat()}


@router.post("/inbound", response_model=EmailWebhookResponse)
async def receive_bank_email(
    sender: str = Form(default=""),
    from_header: str = Form(default="", alias="from"),
    recipient: str = Form(default=""),
    subject: str = Form(default=""),
    body_plain: str = Form(default="", alias="body-plain"),
    message_id: str = Form(default="", alias="Message-Id"),
    pipeline: ExpensePipeline = Depends(get_email_pipeline),
) -> EmailWebhookResponse:
    """Mailgun inbound route. Always answers 200 so the provider does not retry."""
    email = InboundEmail(
        sender=from_header or sender,
        recipient=recipient,
        subject=subject,
        body=body_plain,
        message_id=message_id,
    )
    logger.info("Email received from %s to %s: %s", email.sender, email.recipient, email.subject)
    outcome = await pipeline.handle_bank_email(email)
    return EmailWebhookResponse(status=outcome.status, reason=outcome.reason, expense_id=outcome.expense_id)
