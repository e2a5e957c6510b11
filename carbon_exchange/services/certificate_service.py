"""Certificate issuing and PDF rendering for completed purchases"""
from typing import Dict, Any, Tuple
from datetime import date
from io import BytesIO
import logging
import uuid
import zipfile

import qrcode
from qrcode.constants import ERROR_CORRECT_M
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from carbon_exchange.errors import ConflictError, ForbiddenError, ValidationError
from carbon_exchange.services.mongodb_service import (
    create_certificate_record,
    get_certificate_by_transaction,
    get_transaction_details,
    reissue_certificate_record
)

logger = logging.getLogger(__name__)

MAX_COPIES = 20
BRAND = "Carbon Exchange Portal"
BRAND_GREEN = colors.HexColor("#065f46")
MUTED = colors.HexColor("#6b7280")


def clamp_copies(copies: Any) -> int:
    try:
        requested = int(copies)
    except (TypeError, ValueError):
        requested = 1
    return max(1, min(requested, MAX_COPIES))


def verification_url(base_url: str, cert_id: str) -> str:
    return f"{base_url.rstrip('/')}/verify?certId={cert_id}"


def make_qr_png(text: str) -> bytes:
    """Encode text as a QR code PNG"""
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=10, border=1)
    qr.add_data(text)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffered = BytesIO()
    img.save(buffered, format="PNG")
    return buffered.getvalue()


def check_party(user: Dict[str, Any], row: Dict[str, Any]) -> None:
    """Only the buyer or the seller of a transaction may see its certificate"""
    role = user.get("role")
    if role == "buyer":
        party = row.get("buyer") or {}
    elif role == "seller":
        party = row.get("seller") or {}
    else:
        raise ForbiddenError("Insufficient role")
    if party.get("user_id") != user["user_id"]:
        raise ForbiddenError("Forbidden")


def issue_certificate(
    user: Dict[str, Any],
    transaction_id: str,
    base_url: str,
    regenerate: bool = False
) -> Dict[str, Any]:
    """Find or create the certificate of a transaction and gather what it shows.

    Raises:
        NotFoundError: Unknown transaction
        ForbiddenError: The user is not a party to the transaction
        ValidationError: The transaction is not completed
    """
    row = get_transaction_details(transaction_id)
    check_party(user, row)
    if row.get("status") != "completed":
        raise ValidationError("Certificate available only for completed transactions")

    record = get_certificate_by_transaction(transaction_id)
    if record is None:
        cert_id = str(uuid.uuid4())
        try:
            record = create_certificate_record(row, cert_id, verification_url(base_url, cert_id))
            logger.info("Issued certificate %s for transaction %s", cert_id, transaction_id)
        except ConflictError:
            # Issued by a concurrent request
            record = get_certificate_by_transaction(transaction_id)
            if record is None:
                raise
    elif regenerate:
        cert_id = str(uuid.uuid4())
        record = reissue_certificate_record(transaction_id, cert_id, verification_url(base_url, cert_id))
        logger.info("Reissued certificate %s for transaction %s", cert_id, transaction_id)

    buyer = row.get("buyer") or {}
    seller = row.get("seller") or {}
    project = row.get("project") or {}
    return {
        "buyer_company_name": buyer.get("company_name") or "Buyer",
        "seller_company_name": seller.get("organization_name") or "Seller",
        "number_of_credits": row.get("quantity", 0),
        "transaction_id": row["transaction_id"],
        "certificate_id": record["cert_id"],
        "issue_date": date.today().isoformat(),
        "project_name": project.get("name") or "-",
        "project_type": project.get("type") or "-",
        "registry": project.get("registry") or row.get("registry"),
        "blockchain_tx_hash": row.get("blockchain_tx_hash"),
        "verification_url": verification_url(base_url, record["cert_id"])
    }


def _field(pdf: canvas.Canvas, x: float, y: float, label: str, value: Any) -> None:
    pdf.setFont("Helvetica", 9)
    pdf.setFillColor(MUTED)
    pdf.drawString(x, y, label)
    pdf.setFont("Helvetica-Bold", 13)
    pdf.setFillColor(colors.HexColor("#111827"))
    pdf.drawString(x, y - 6 * mm, str(value))


def render_certificate_pdf(data: Dict[str, Any]) -> bytes:
    """Draw the one-page A4 certificate"""
    buffer = BytesIO()
    width, height = A4
    pdf = canvas.Canvas(buffer, pagesize=A4)
    pdf.setTitle(f"Carbon Transaction Certificate {data['certificate_id']}")

    margin = 16 * mm
    pdf.setStrokeColor(BRAND_GREEN)
    pdf.setLineWidth(2)
    pdf.roundRect(margin, margin, width - 2 * margin, height - 2 * margin, 8)

    top = height - margin - 14 * mm
    pdf.setFillColor(BRAND_GREEN)
    pdf.setFont("Helvetica-Bold", 16)
    pdf.drawString(margin + 10 * mm, top, BRAND)
    pdf.setFont("Helvetica", 9)
    pdf.setFillColor(MUTED)
    pdf.drawRightString(width - margin - 10 * mm, top, f"Certificate ID: {data['certificate_id']}")

    pdf.setFillColor(BRAND_GREEN)
    pdf.setFont("Helvetica-Bold", 22)
    pdf.drawCentredString(width / 2, top - 18 * mm, "Certificate of Carbon Credit Transaction")

    left = margin + 10 * mm
    right = width / 2 + 5 * mm
    y = top - 38 * mm
    rows = [
        (("Buyer", data["buyer_company_name"]), ("Seller", data["seller_company_name"])),
        (("Number of credits", data["number_of_credits"]), ("Issue date", data["issue_date"])),
        (("Project", data["project_name"]), ("Project type", data["project_type"])),
        (("Registry", data.get("registry") or "-"), ("Transaction ID", data["transaction_id"])),
    ]
    for first, second in rows:
        _field(pdf, left, y, *first)
        _field(pdf, right, y, *second)
        y -= 20 * mm

    if data.get("blockchain_tx_hash"):
        _field(pdf, left, y, "Ledger transaction", data["blockchain_tx_hash"])
        y -= 20 * mm

    pdf.setStrokeColor(colors.HexColor("#d1d5db"))
    pdf.setLineWidth(1)
    pdf.line(left, y, width - margin - 10 * mm, y)

    qr_size = 42 * mm
    qr_y = y - qr_size - 8 * mm
    pdf.drawImage(ImageReader(BytesIO(make_qr_png(data["verification_url"]))), left, qr_y, qr_size, qr_size)
    pdf.setFont("Helvetica", 10)
    pdf.setFillColor(colors.HexColor("#1f2937"))
    pdf.drawString(left + qr_size + 8 * mm, qr_y + qr_size - 8 * mm, "Scan to verify this certificate:")
    pdf.setFont("Helvetica", 8)
    pdf.setFillColor(MUTED)
    pdf.drawString(left + qr_size + 8 * mm, qr_y + qr_size - 14 * mm, data["verification_url"])

    pdf.setFont("Helvetica", 9)
    pdf.drawString(left, margin + 10 * mm, f"Issued by {BRAND}")
    pdf.drawRightString(width - margin - 10 * mm, margin + 10 * mm, "Authorized signatory")

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()


def zip_copies(pdf: bytes, certificate_id: str, copies: int) -> bytes:
    buffer = BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for i in range(copies):
            archive.writestr(f"certificate_{certificate_id}_{i + 1}.pdf", pdf)
    return buffer.getvalue()


def build_download(data: Dict[str, Any], copies: int) -> Tuple[bytes, str, str]:
    """Render the certificate and package it; returns (body, mimetype, filename)"""
    pdf = render_certificate_pdf(data)
    cert_id = data["certificate_id"]
    if copies > 1:
        return zip_copies(pdf, cert_id, copies), "application/zip", f"certificates_{cert_id}.zip"
    return pdf, "application/pdf", f"certificate_{cert_id}.pdf"
