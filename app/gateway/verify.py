# app/gateway/verify.py
"""
On-chain payment verification against the Neutaro LCD API.

Verification is stateless: it only reads the ledger, so repeating it is
always safe. Neither function raises. Network errors, malformed responses,
short payments and missing confirmations all come back as found=False,
which callers treat as "not yet, retry later".

Token: NTMPI, denom "uneutaro", 1 NTMPI = 1,000,000 uneutaro.
"""
import logging
from typing import Optional

import requests

from app.core.config import Settings
from app.gateway.models import TxResult
from app.gateway.pricing import format_micro, to_micro
from app.services import ledger_api

logger = logging.getLogger(__name__)


def count_confirmations(tx_height: int, current_height: Optional[int]) -> int:
    """Blocks mined after the tx's block; 0 when either height is unknown."""
    if not current_height or current_height <= 0 or tx_height <= 0:
        return 0
    return max(0, current_height - tx_height)


def verify_payment(memo: str, expected_amount: str, config: Settings) -> TxResult:
    """
    Look for a successful transfer to the gateway address carrying `memo`.

    Args:
        memo: Invoice memo the payer embedded in the transaction
        expected_amount: Invoice amount in NTMPI
        config: Gateway settings (payment address, LCD endpoint, denom,
            minimum confirmations)

    Returns:
        TxResult with found=True only when the memo matches, the tx succeeded,
        the amount covers expected_amount and it has enough confirmations.
        A short payment returns found=False with the tx hash and the partial
        amount for diagnostics.
    """
    try:
        expected_micro = to_micro(expected_amount)
        rest_base = config.rest_base
        address = config.GATEWAY_PAYMENT_ADDRESS

        search = ledger_api.search_txs_by_recipient(
            rest_base, address, timeout=config.GATEWAY_LEDGER_TIMEOUT
        )

        for tx_response, tx in zip(search.tx_responses, search.txs):
            if tx.body.memo != memo:
                continue
            if tx_response.code != 0:
                logger.info(f"verify: tx {tx_response.txhash} for memo {memo} failed on-chain (code {tx_response.code})")
                continue

            paid_micro = ledger_api.sum_transfers(tx, address, config.GATEWAY_DENOM)
            paid = format_micro(paid_micro)
            if paid_micro < expected_micro:
                logger.info(f"verify: tx {tx_response.txhash} paid {paid}, expected {expected_amount} for memo {memo}")
                return TxResult(found=False, tx_hash=tx_response.txhash, amount=paid)

            current_height = ledger_api.get_current_height(rest_base, timeout=config.GATEWAY_LEDGER_TIMEOUT)
            confirmations = count_confirmations(int(tx_response.height), current_height)

            return TxResult(
                found=confirmations >= config.GATEWAY_MIN_CONFIRMATIONS,
                tx_hash=tx_response.txhash,
                amount=paid,
                memo=tx.body.memo,
                confirmations=confirmations,
            )

        return TxResult(found=False)

    except (requests.RequestException, ValueError) as e:
        logger.warning(f"verify: could not check payment for memo {memo}: {e}")
        return TxResult(found=False)
    except Exception as e:
        logger.error(f"verify: unexpected error checking memo {memo}: {e}", exc_info=True)
        return TxResult(found=False)


def verify_tx_by_hash(
    tx_hash: str,
    expected_address: str,
    config: Settings,
    expected_amount: Optional[str] = None
) -> TxResult:
    """
    Verify a specific transaction, used for prepaid deposits.

    Args:
        tx_hash: Transaction hash supplied by the depositor
        expected_address: Account that must have received the funds
        config: Gateway settings
        expected_amount: Optional minimum amount in NTMPI

    Returns:
        TxResult with the transferred amount; found=True only when the tx
        succeeded, sent a positive (and sufficient) amount to
        expected_address, and has enough confirmations. tx_hash is
        the ledger's own spelling of the hash, whatever case was supplied.
    """
    try:
        rest_base = config.rest_base
        result = ledger_api.get_tx_by_hash(rest_base, tx_hash, timeout=config.GATEWAY_LEDGER_TIMEOUT)
        tx_response = result.tx_response

        if tx_response.code != 0:
            logger.info(f"verify: deposit tx {tx_hash} failed on-chain (code {tx_response.code})")
            return TxResult(found=False, tx_hash=tx_hash)

        paid_micro = ledger_api.sum_transfers(result.tx, expected_address, config.GATEWAY_DENOM)
        if paid_micro == 0:
            return TxResult(found=False, tx_hash=tx_hash)

        paid = format_micro(paid_micro)
        if expected_amount is not None and paid_micro < to_micro(expected_amount):
            logger.info(f"verify: deposit tx {tx_hash} paid {paid}, expected {expected_amount}")
            return TxResult(found=False, tx_hash=tx_hash, amount=paid)

        current_height = ledger_api.get_current_height(rest_base, timeout=config.GATEWAY_LEDGER_TIMEOUT)
        confirmations = count_confirmations(int(tx_response.height), current_height)

        return TxResult(
            found=confirmations >= config.GATEWAY_MIN_CONFIRMATIONS,
            tx_hash=tx_response.txhash,
            amount=paid,
            memo=result.tx.body.memo,
            confirmations=confirmations,
        )

    except (requests.RequestException, ValueError) as e:
        logger.warning(f"verify: could not check deposit tx {tx_hash}: {e}")
        return TxResult(found=False)
    except Exception as e:
        logger.error(f"verify: unexpected error checking deposit tx {tx_hash}: {e}", exc_info=True)
        return TxResult(found=False)
