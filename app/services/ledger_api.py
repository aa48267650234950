# app/services/ledger_api.py
"""
Client for the Neutaro REST (LCD) query API.

Only three read endpoints are used:
- GET /cosmos/tx/v1beta1/txs                          search by recipient
- GET /cosmos/tx/v1beta1/txs/{hash}                   single transaction
- GET /cosmos/base/tendermint/v1beta1/blocks/latest   current height

Responses are decoded through the pydantic schemas below. Anything that
does not fit raises pydantic.ValidationError instead of being guessed at.
"""
import logging
from typing import List, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

MSG_SEND_TYPE = "/cosmos.bank.v1beta1.MsgSend"
ORDER_BY_DESC = "2"  # Cosmos SDK numeric enum
SEARCH_PAGE_LIMIT = 20

DIGITS = r"^[0-9]+$"


class Coin(BaseModel):
    denom: str
    amount: str = Field(..., pattern=DIGITS)


class TxMessage(BaseModel):
    """Any message in a tx body. Only MsgSend is inspected further."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type_url: str = Field(..., alias="@type")


class MsgSend(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type_url: str = Field(..., alias="@type")
    from_address: str
    to_address: str
    amount: List[Coin]


class TxBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    messages: List[TxMessage] = []
    memo: str = ""


class Tx(BaseModel):
    model_config = ConfigDict(extra="ignore")

    body: TxBody


class TxResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    height: str = Field(..., pattern=DIGITS)
    txhash: str
    code: int


class TxSearchResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    txs: List[Tx] = []
    tx_responses: List[TxResponse] = []


class TxByHashResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tx: Tx
    tx_response: TxResponse


class BlockHeader(BaseModel):
    model_config = ConfigDict(extra="ignore")

    height: str = Field(..., pattern=DIGITS)


class Block(BaseModel):
    model_config = ConfigDict(extra="ignore")

    header: BlockHeader


class LatestBlockResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    block: Block


def sum_transfers(tx: Tx, recipient: str, denom: str) -> int:
    """
    Total minor units of `denom` sent to `recipient` by the tx's MsgSend messages.

    Raises:
        ValidationError: If a MsgSend message does not match the schema
    """
    total = 0
    for message in tx.body.messages:
        if message.type_url != MSG_SEND_TYPE:
            continue
        send = MsgSend.model_validate(message.model_dump(by_alias=True))
        if send.to_address != recipient:
            continue
        for coin in send.amount:
            if coin.denom == denom:
                total += int(coin.amount)
    return total


def search_txs_by_recipient(
    rest_base: str,
    recipient: str,
    timeout: float = 10,
    limit: int = SEARCH_PAGE_LIMIT
) -> TxSearchResponse:
    """
    Fetch the most recent transactions that transferred funds to `recipient`.

    Raises:
        RequestException: If the HTTP request fails or returns an error status
        ValueError: If the body is not JSON or does not match the schema
    """
    api_url = f"{rest_base}/cosmos/tx/v1beta1/txs"
    params = {
        "events": f"transfer.recipient='{recipient}'",
        "order_by": ORDER_BY_DESC,
        "pagination.limit": str(limit),
    }
    response = requests.get(api_url, params=params, timeout=timeout)
    response.raise_for_status()

    result = TxSearchResponse.model_validate(response.json())
    if len(result.txs) != len(result.tx_responses):
        raise ValueError(
            f"Mismatched tx search response: {len(result.txs)} txs, "
            f"{len(result.tx_responses)} tx_responses"
        )
    return result


def get_tx_by_hash(rest_base: str, tx_hash: str, timeout: float = 10) -> TxByHashResponse:
    """
    Fetch a single transaction by hash.

    Raises:
        RequestException: If the HTTP request fails or returns an error status
        ValueError: If the body is not JSON or does not match the schema
    """
    api_url = f"{rest_base}/cosmos/tx/v1beta1/txs/{tx_hash}"
    response = requests.get(api_url, timeout=timeout)
    response.raise_for_status()
    return TxByHashResponse.model_validate(response.json())


def get_latest_height(rest_base: str, timeout: float = 10) -> int:
    """
    Fetch the current chain height.

    Raises:
        RequestException: If the HTTP request fails or returns an error status
        ValueError: If the body is not JSON or does not match the schema
    """
    api_url = f"{rest_base}/cosmos/base/tendermint/v1beta1/blocks/latest"
    response = requests.get(api_url, timeout=timeout)
    response.raise_for_status()
    return int(LatestBlockResponse.model_validate(response.json()).block.header.height)


def get_current_height(rest_base: str, timeout: float = 10) -> Optional[int]:
    """Latest height, or None when the ledger cannot be reached or parsed."""
    try:
        return get_latest_height(rest_base, timeout=timeout)
    except (requests.RequestException, ValueError) as e:
        # pydantic.ValidationError is a ValueError subclass
        logger.warning(f"Could not fetch latest block height from {rest_base}: {e}")
        return None
