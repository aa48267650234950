# app/api/endpoints/invoices.py
from fastapi import APIRouter, Depends, Path, Request
import logging

from app.api.models.invoice import InvoiceResponse
from app.gateway.controller import GatewayController, get_controller
from app.gateway.middleware import get_client_ip

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/{invoice_id}",
    response_model=InvoiceResponse,
    summary="Get Invoice Status"
)
def get_invoice(
    request: Request,
    invoice_id: str = Path(..., description="Invoice id returned in the 402 payment offer."),
    controller: GatewayController = Depends(get_controller),
) -> InvoiceResponse:
    """
    Returns an invoice. A pending invoice is first checked for staleness and
    then re-verified on-chain, so clients can poll this endpoint until it
    reports `paid` and then retry their request with X-Payment-Proof.

    Raises:
        NotFoundError: 404 if the invoice does not exist
    """
    invoice = controller.get_invoice_status(invoice_id, client_ip=get_client_ip(request))
    logger.info(f"Invoice {invoice.id} polled, status {invoice.status.value}")
    return InvoiceResponse.from_invoice(invoice)
