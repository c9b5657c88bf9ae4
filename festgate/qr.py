from __future__ import annotations
from io import BytesIO
from typing import Any, Dict

import orjson
import qrcode
import qrcode.constants

from .config import EVENT_CODE
from .helpers import now_ts, to_iso


def ticket_payload(ticket_number: str, registration_id: str,
                   name: str, email: str) -> str:
    """What gets encoded into the QR image on every ticket."""
    return orjson.dumps({
        "ticketNumber": ticket_number,
        "registrationId": registration_id,
        "name": name,
        "email": email,
        "eventCode": EVENT_CODE,
        "generatedAt": to_iso(now_ts()),
    }).decode()


def qr_png(data: str) -> bytes:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=2,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, "PNG")
    return buffer.getvalue()


def ticket_attachment(seat: Dict[str, Any]) -> Dict[str, Any]:
    data = ticket_payload(seat["ticketNumber"], seat["registrationId"],
                          seat["name"], seat["email"])
    return {
        "filename": f"{seat['ticketNumber']}.png",
        "content": qr_png(data),
        "maintype": "image",
        "subtype": "png",
    }
