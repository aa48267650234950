# app/api/endpoints/prepaid.py
from fastapi import APIRouter, Depends, Path, Request
import logging

from app.api.models.prepaid import BalanceResponse, DepositRequest, DepositResponse
from app.gateway.controller import GatewayController, get_controller
from app.gateway.middleware import get_client_ip

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/deposit",
    response_model=DepositResponse,
    summary="Credit a Prepaid Deposit"
)
def deposit(
    request: Request,
    body: DepositRequest,
    controller: GatewayController = Depends(get_controller),
) -> DepositResponse:
    """
    Credits a prepaid balance from an on-chain deposit.

    The transaction is looked up by hash and must have transferred funds to
    the gateway address with enough confirmations. The credited amount is
    what the chain shows, not what the client claims.

    Raises:
        NotFoundError: 404 if prepaid mode is disabled
        PaymentPendingError: 402 if the deposit cannot be confirmed yet
        DuplicatePaymentError: 409 if the transaction was already credited
    """
    credited, balance = controller.deposit(
        client_id=body.clientId,
        tx_hash=body.txHash,
        amount=body.amount,
        client_ip=get_client_ip(request),
    )
    return DepositResponse(clientId=body.clientId, txHash=body.txHash, credited=credited, balance=balance)


@router.get(
    "/balance/{client_id}",
    response_model=BalanceResponse,
    summary="Get Prepaid Balance"
)
def get_balance(
    client_id: str = Path(..., description="Prepaid account key."),
    controller: GatewayController = Depends(get_controller),
) -> BalanceResponse:
    """
    Returns the current prepaid balance ("0" for unknown clients).

    Raises:
        NotFoundError: 404 if prepaid mode is disabled
    """
    return BalanceResponse(clientId=client_id, balance=controller.get_balance(client_id))
