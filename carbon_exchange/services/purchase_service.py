"""Purchase settlement: stock debit, pricing, ledger recording and the transaction record.

A purchase never runs inside a multi-document transaction. Instead every step
is made safe on its own:

* stock is debited with a single conditional ``find_one_and_update`` that only
  matches while enough quantity is available, so concurrent buyers can never
  oversell a lot;
* a unique ``(buyer_id, idempotency_key)`` index makes retried requests
  resolve to the transaction that was already written;
* if the transaction record cannot be written the debit is handed back;
* a transaction is written ``pending`` with a completion claim. If completing
  it fails the claim is dropped and the debit stays held, so a retry with the
  same idempotency key picks it up and finishes it.

Ledger recording is best effort. The purchase is completed either way and
the outcome is kept in ``blockchain_status``.
"""
from typing import Dict, Any, Optional
from datetime import timedelta
from decimal import Decimal
import logging

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError, DuplicateKeyError

from carbon_exchange.errors import ConflictError, NotFoundError, StorageError, ValidationError
from carbon_exchange.services import xrpl_service
from carbon_exchange.services.mongodb_service import (
    get_buyer_profile,
    get_credit,
    get_db,
    get_project,
    money,
    new_id,
    serialize,
    utcnow
)

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM_FEE_RATE = 0.02
DEFAULT_COMPLIANCE_FEE_RATE = 0.01
DEFAULT_GST_RATE = 0.18

# A completion claim older than this is taken to be abandoned
COMPLETION_LEASE = timedelta(seconds=60)


def price_purchase(
    price_per_credit: Any,
    quantity: int,
    platform_fee_rate: float = DEFAULT_PLATFORM_FEE_RATE,
    compliance_fee_rate: float = DEFAULT_COMPLIANCE_FEE_RATE,
    gst_rate: float = DEFAULT_GST_RATE
) -> Dict[str, Decimal]:
    """Price a purchase. GST applies to the platform and compliance fees only."""
    subtotal = money(Decimal(str(price_per_credit)) * quantity)
    platform_fee = money(subtotal * Decimal(str(platform_fee_rate)))
    compliance_fee = money(subtotal * Decimal(str(compliance_fee_rate)))
    gst = money((platform_fee + compliance_fee) * Decimal(str(gst_rate)))
    return {
        "unit_price": money(price_per_credit),
        "subtotal": subtotal,
        "platform_fee": platform_fee,
        "compliance_fee": compliance_fee,
        "gst": gst,
        "amount_due": subtotal + platform_fee + compliance_fee + gst
    }


def debit_credit(credit_id: str, quantity: int) -> Optional[Dict[str, Any]]:
    """Take ``quantity`` out of an available lot.

    Returns the lot after the debit, or None when it is not available or
    holds less than ``quantity``.
    """
    db = get_db()
    credit = db.carbon_credits.find_one_and_update(
        {
            "credit_id": credit_id,
            "status": "available",
            "available_quantity": {"$gte": quantity}
        },
        {
            "$inc": {"available_quantity": -quantity},
            "$set": {"updated_at": utcnow()}
        },
        return_document=ReturnDocument.AFTER
    )
    if credit and credit["available_quantity"] == 0:
        db.carbon_credits.update_one(
            {"credit_id": credit_id, "status": "available", "available_quantity": 0},
            {"$set": {"status": "sold"}}
        )
        credit["status"] = "sold"
    return credit


def restore_credit(credit_id: str, quantity: int) -> None:
    """Hand a debited quantity back to its lot"""
    db = get_db()
    db.carbon_credits.update_one(
        {"credit_id": credit_id},
        {"$inc": {"available_quantity": quantity}, "$set": {"updated_at": utcnow()}}
    )
    db.carbon_credits.update_one(
        {"credit_id": credit_id, "status": "sold", "available_quantity": {"$gt": 0}},
        {"$set": {"status": "available"}}
    )
    logger.warning("Returned %s credits to lot %s", quantity, credit_id)


def find_by_idempotency_key(buyer_id: str, idempotency_key: str) -> Optional[Dict[str, Any]]:
    try:
        return serialize(get_db().transactions.find_one({
            "buyer_id": buyer_id,
            "idempotency_key": idempotency_key
        }))
    except PyMongoError as e:
        raise StorageError(f"Failed to look up transaction: {str(e)}")


def purchase_result(txn: Dict[str, Any], replayed: bool = False) -> Dict[str, Any]:
    """The response body for a settled purchase"""
    return {
        "ok": True,
        "transactionId": txn["transaction_id"],
        "status": txn["status"],
        "quantity": txn["quantity"],
        "unitPrice": txn["unit_price"],
        "subtotal": txn["total_price"],
        "fees": {
            "platform": txn["platform_fee"],
            "compliance": txn["compliance_fee"],
            "gst": txn["gst_applied"]
        },
        "amountDue": txn["amount_due"],
        "totalPrice": txn["total_price"],
        "blockchainStatus": txn.get("blockchain_status"),
        "blockchainTxHash": txn.get("blockchain_tx_hash"),
        "mintTxHash": txn.get("mint_tx_hash"),
        "explorerUrl": xrpl_service.get_explorer_url(txn.get("blockchain_tx_hash")),
        "replayed": replayed
    }


def record_on_ledger(txn: Dict[str, Any], registry: Optional[str]) -> Dict[str, Any]:
    """Mint the purchased lot and write the purchase record.

    Returns the chain fields to store on the transaction. Ledger failures are
    logged and reported through ``blockchain_status``.
    """
    if not xrpl_service.is_ledger_enabled():
        return {"blockchain_status": "skipped"}

    chain = {"blockchain_status": "recorded"}
    errors = []
    try:
        minted = xrpl_service.mint_credit_token(
            txn["credit_id"],
            txn["quantity"],
            destination=txn.get("wallet_address")
        )
        chain.update({
            "mint_tx_hash": minted["mint_tx_hash"],
            "nftoken_id": minted["nftoken_id"],
            "offer_tx_hash": minted["offer_tx_hash"]
        })
    except xrpl_service.LedgerError as e:
        logger.warning("Token mint failed for transaction %s: %s", txn["transaction_id"], e)
        errors.append(str(e))

    try:
        chain["blockchain_tx_hash"] = xrpl_service.record_purchase(
            buyer=txn.get("wallet_address") or txn["buyer_id"],
            seller=txn["seller_id"],
            credits=txn["quantity"],
            project_id=txn["project_id"],
            registry=registry,
            certificate_url=None,
            price_cents=int(money(txn["total_price"]) * 100)
        )
    except xrpl_service.LedgerError as e:
        logger.warning("Ledger record failed for transaction %s: %s", txn["transaction_id"], e)
        errors.append(str(e))

    if errors:
        chain["blockchain_status"] = "failed"
        chain["blockchain_error"] = "; ".join(errors)
    return chain


def claim_completion(transaction_id: str) -> Optional[Dict[str, Any]]:
    """Take over completion of a pending transaction.

    Returns the transaction when it is pending and nobody holds a live claim
    on it, otherwise None.
    """
    stale = utcnow() - COMPLETION_LEASE
    try:
        return serialize(get_db().transactions.find_one_and_update(
            {
                "transaction_id": transaction_id,
                "status": "pending",
                "$or": [
                    {"completion_claimed_at": None},
                    {"completion_claimed_at": {"$lt": stale}}
                ]
            },
            {"$set": {"completion_claimed_at": utcnow()}},
            return_document=ReturnDocument.AFTER
        ))
    except PyMongoError as e:
        raise StorageError(f"Failed to claim transaction {transaction_id}: {str(e)}")


def reopen_transaction(transaction_id: str) -> None:
    """Put a transaction back to pending and drop its claim so a retry can finish it"""
    try:
        get_db().transactions.update_one(
            {"transaction_id": transaction_id},
            {
                "$set": {"status": "pending"},
                "$unset": {"completion_claimed_at": "", "completed_at": ""}
            }
        )
    except PyMongoError as e:
        logger.error("Could not reopen transaction %s: %s", transaction_id, e)


def complete_purchase(txn: Dict[str, Any]) -> Dict[str, Any]:
    """Record a claimed pending purchase on the ledger and mark it completed.

    The ledger step is skipped when an earlier attempt already stored its
    outcome. If a write fails the transaction is reopened and the debit stays
    held, so a retry with the same idempotency key finishes the purchase.
    """
    db = get_db()
    transaction_id = txn["transaction_id"]
    try:
        if not txn.get("blockchain_status"):
            chain = record_on_ledger(txn, txn.get("registry"))
            db.transactions.update_one({"transaction_id": transaction_id}, {"$set": chain})
            txn.update(chain)

        completion = {"status": "completed", "completed_at": utcnow()}
        flipped = db.transactions.update_one(
            {"transaction_id": transaction_id, "status": "pending"},
            {"$set": completion, "$unset": {"completion_claimed_at": ""}}
        )
    except PyMongoError as e:
        reopen_transaction(transaction_id)
        raise StorageError(f"Failed to complete transaction {transaction_id}: {str(e)}")
    txn.update(completion)
    txn.pop("completion_claimed_at", None)
    if not flipped.modified_count:
        return txn

    try:
        db.seller_profiles.update_one(
            {"profile_id": txn["seller_id"]},
            {
                "$inc": {"total_revenue": txn["total_price"], "total_credits_sold": txn["quantity"]},
                "$set": {"updated_at": utcnow()}
            }
        )
    except PyMongoError as e:
        reopen_transaction(transaction_id)
        raise StorageError(f"Failed to complete transaction {transaction_id}: {str(e)}")
    return txn


def replay_purchase(existing: Dict[str, Any]) -> Dict[str, Any]:
    """Answer a retried request, finishing the purchase if it was left pending"""
    if existing["status"] == "pending":
        claimed = claim_completion(existing["transaction_id"])
        if claimed:
            logger.info("Resuming pending purchase %s", existing["transaction_id"])
            return purchase_result(complete_purchase(claimed), replayed=True)
    return purchase_result(existing, replayed=True)


def settle_purchase(
    user_id: str,
    credit_id: str,
    quantity: int,
    wallet_address: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    fee_rates: Optional[Dict[str, float]] = None
) -> Dict[str, Any]:
    """Buy ``quantity`` credits of a lot for the buyer behind ``user_id``.

    Raises:
        ValidationError: Bad quantity, missing buyer profile or not enough stock
        NotFoundError: Unknown credit, or a credit without a project
        StorageError: The transaction could not be written (the debit is undone)
            or could not be completed (retrying with the same key finishes it)
    """
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")

    buyer = get_buyer_profile(user_id)
    if not buyer:
        raise ValidationError("Buyer profile not found")

    if idempotency_key:
        existing = find_by_idempotency_key(buyer["profile_id"], idempotency_key)
        if existing:
            logger.info("Replaying purchase %s for key %s", existing["transaction_id"], idempotency_key)
            return replay_purchase(existing)

    credit = get_credit(credit_id)
    try:
        project = get_project(credit["project_id"])
    except NotFoundError:
        raise NotFoundError("Project not found for credit")

    try:
        debited = debit_credit(credit_id, quantity)
    except PyMongoError as e:
        raise StorageError(f"Failed to reserve credits: {str(e)}")
    if debited is None:
        raise ValidationError("Insufficient available quantity")

    quote = price_purchase(debited["price_per_credit"], quantity, **(fee_rates or {}))
    txn = {
        "transaction_id": new_id(),
        "buyer_id": buyer["profile_id"],
        "seller_id": project["seller_id"],
        "credit_id": credit_id,
        "project_id": project["project_id"],
        "quantity": quantity,
        "unit_price": float(quote["unit_price"]),
        "total_price": float(quote["subtotal"]),
        "platform_fee": float(quote["platform_fee"]),
        "compliance_fee": float(quote["compliance_fee"]),
        "gst_applied": float(quote["gst"]),
        "amount_due": float(quote["amount_due"]),
        "registry": project.get("registry"),
        "wallet_address": wallet_address,
        "status": "pending",
        "transaction_date": utcnow(),
        "completion_claimed_at": utcnow()
    }
    if idempotency_key:
        txn["idempotency_key"] = idempotency_key

    try:
        get_db().transactions.insert_one(txn)
    except DuplicateKeyError:
        # A concurrent request with the same key won the insert
        restore_credit(credit_id, quantity)
        existing = find_by_idempotency_key(buyer["profile_id"], idempotency_key)
        if existing:
            return replay_purchase(existing)
        raise ConflictError("Duplicate purchase request")
    except PyMongoError as e:
        restore_credit(credit_id, quantity)
        raise StorageError(f"Failed to record transaction: {str(e)}")
    serialize(txn)

    txn = complete_purchase(txn)
    logger.info(
        "Buyer %s bought %s credits of %s for %s (%s)",
        buyer["profile_id"], quantity, credit_id, txn["amount_due"], txn["blockchain_status"]
    )
    return purchase_result(txn)
