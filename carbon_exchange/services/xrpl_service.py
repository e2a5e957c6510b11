"""XRPL service for recording credit purchases on the ledger"""
from typing import Dict, Any, Optional
import hashlib
import json
import logging
import os

import xrpl
from xrpl.clients import JsonRpcClient
from xrpl.models.transactions import AccountSet, Memo, NFTokenCreateOffer, NFTokenMint
from xrpl.transaction import submit_and_wait
from xrpl.utils import get_nftoken_id, str_to_hex
from xrpl.wallet import Wallet

logger = logging.getLogger(__name__)

DEFAULT_NODE_URL = "https://s.altnet.rippletest.net:51234"
DEFAULT_EXPLORER_URL = "https://testnet.xrpl.org/transactions/"

# NFTokenMint tfTransferable, NFTokenCreateOffer tfSellNFToken
TRANSFERABLE_FLAG = 8
SELL_OFFER_FLAG = 1

PURCHASE_MEMO_TYPE = "carbon-exchange/purchase"


class LedgerError(Exception):
    """Recording on the XRP Ledger failed."""


def get_client() -> JsonRpcClient:
    """Get XRPL client"""
    node_url = os.getenv("XRPL_NODE_URL", DEFAULT_NODE_URL)
    return JsonRpcClient(node_url)


def is_ledger_enabled() -> bool:
    """Check whether a signing wallet is configured"""
    return bool(os.getenv("XRPL_WALLET_SEED"))


def get_wallet() -> Wallet:
    seed = os.getenv("XRPL_WALLET_SEED")
    if not seed:
        raise LedgerError("Missing XRPL environment variables. Required: XRPL_WALLET_SEED")
    return Wallet.from_seed(seed)


def get_explorer_url(transaction_hash: Optional[str]) -> Optional[str]:
    """Get the ledger explorer URL for a transaction hash"""
    if not transaction_hash:
        return None
    base = os.getenv("XRPL_EXPLORER_URL", DEFAULT_EXPLORER_URL)
    return f"{base.rstrip('/')}/{transaction_hash}"


def credit_token_uri(credit_id: str, quantity: int) -> str:
    return f"CARBON-CREDIT-{credit_id}-{quantity}"


def credit_token_taxon(credit_id: str) -> int:
    """Group every token of a credit lot under one taxon."""
    return int(hashlib.sha256(credit_id.encode()).hexdigest()[:8], 16)


def _submit(transaction, wallet: Wallet, client: JsonRpcClient) -> Dict[str, Any]:
    response = submit_and_wait(transaction, client, wallet)
    result = response.result
    engine_result = result.get("meta", {}).get("TransactionResult")
    if engine_result != "tesSUCCESS":
        raise LedgerError(f"Transaction failed on ledger: {engine_result}")
    return result


def _describe_failure(error: Exception) -> str:
    message = str(error)
    if "tecUNFUNDED" in message or "tecINSUFFICIENT_RESERVE" in message:
        return "Insufficient XRP balance for fees"
    if "Connect" in type(error).__name__ or "Timeout" in type(error).__name__:
        return "Network connection failed. Please try again."
    return message


def mint_credit_token(credit_id: str, quantity: int, destination: Optional[str] = None) -> Dict[str, Any]:
    """Mint an NFToken standing for a purchased credit lot.

    The token is minted to the platform wallet. When ``destination`` is given
    a zero-amount sell offer reserved for that account is created so the
    buyer can claim the token from their own wallet.

    Returns:
        Dict with ``mint_tx_hash``, ``nftoken_id`` and ``offer_tx_hash``

    Raises:
        LedgerError: If any ledger submission fails
    """
    try:
        client = get_client()
        wallet = get_wallet()

        mint_tx = NFTokenMint(
            account=wallet.address,
            uri=str_to_hex(credit_token_uri(credit_id, quantity)),
            flags=TRANSFERABLE_FLAG,
            transfer_fee=0,
            nftoken_taxon=credit_token_taxon(credit_id)
        )
        minted = _submit(mint_tx, wallet, client)
        nftoken_id = minted.get("meta", {}).get("nftoken_id") or get_nftoken_id(minted["meta"])
        logger.info("Minted credit token %s in %s", nftoken_id, minted["hash"])

        offer_hash = None
        if destination and destination != wallet.address:
            offer_tx = NFTokenCreateOffer(
                account=wallet.address,
                nftoken_id=nftoken_id,
                amount="0",
                destination=destination,
                flags=SELL_OFFER_FLAG
            )
            offer_hash = _submit(offer_tx, wallet, client)["hash"]

        return {
            "mint_tx_hash": minted["hash"],
            "nftoken_id": nftoken_id,
            "offer_tx_hash": offer_hash
        }
    except LedgerError:
        raise
    except Exception as e:
        raise LedgerError(f"Failed to mint credit token: {_describe_failure(e)}") from e


def record_purchase(
    buyer: str,
    seller: str,
    credits: int,
    project_id: str,
    registry: Optional[str],
    certificate_url: Optional[str],
    price_cents: int
) -> str:
    """Write a purchase record to the ledger as a memo and return its hash"""
    record = {
        "buyer": buyer,
        "seller": seller,
        "credits": credits,
        "projectId": project_id,
        "registry": registry or "",
        "certificateUrl": certificate_url or "",
        "priceUsd": price_cents
    }
    try:
        client = get_client()
        wallet = get_wallet()
        logger.info(
            "Recording purchase on ledger: buyer=%s... seller=%s... credits=%s project=%s",
            buyer[:8], seller[:8], credits, project_id
        )
        memo_tx = AccountSet(
            account=wallet.address,
            memos=[Memo(
                memo_type=str_to_hex(PURCHASE_MEMO_TYPE),
                memo_format=str_to_hex("application/json"),
                memo_data=str_to_hex(json.dumps(record, sort_keys=True))
            )]
        )
        result = _submit(memo_tx, wallet, client)
        logger.info("Purchase recorded on ledger: %s", result["hash"])
        return result["hash"]
    except LedgerError:
        raise
    except Exception as e:
        raise LedgerError(f"Ledger transaction failed: {_describe_failure(e)}") from e


def verify_xrpl_transaction(transaction_hash: str, expected_type: str = None) -> Dict[str, Any]:
    """Verify a transaction on the XRPL"""
    try:
        client = get_client()

        tx_response = client.request(xrpl.models.requests.Tx(
            transaction=transaction_hash
        ))

        if not tx_response.is_successful():
            return {
                "success": False,
                "message": "Failed to fetch transaction"
            }

        tx_data = tx_response.result
        tx_type = tx_data.get("TransactionType") or tx_data.get("tx_json", {}).get("TransactionType")

        if expected_type and tx_type != expected_type:
            return {
                "success": False,
                "message": f"Transaction type mismatch. Expected {expected_type}"
            }

        if tx_data.get("meta", {}).get("TransactionResult") != "tesSUCCESS":
            return {
                "success": False,
                "message": "Transaction was not successful"
            }

        return {
            "success": True,
            "transaction": tx_data
        }

    except Exception as e:
        return {
            "success": False,
            "message": f"Failed to verify transaction: {str(e)}"
        }
