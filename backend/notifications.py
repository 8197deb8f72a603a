import html
from typing import Dict, Optional, Tuple

import resend


def send_email_via_resend(payload: Dict[str, object], api_key: str) -> Tuple[bool, Optional[str]]:
    configured_api_key = (api_key or "").strip()
    if not configured_api_key:
        return False, "Resend API key is not configured."

    previous_api_key = getattr(resend, "api_key", None)
    resend.api_key = configured_api_key
    try:
        response = resend.Emails.send(payload)
    except Exception as exc:
        return False, str(exc)
    finally:
        resend.api_key = previous_api_key

    if not isinstance(response, dict) or not response.get("id"):
        return False, str(response)

    return True, None


def format_amount(value) -> str:
    numeric = float(value or 0)
    return str(int(numeric)) if numeric.is_integer() else f"{numeric:.2f}"


def build_order_email(order_document: Dict, currency: str) -> Tuple[str, str]:
    totals = order_document.get("totals") or {}
    slot = (order_document.get("delivery") or {}).get("slot") or {}
    rows = []
    lines = []
    for item in order_document.get("items") or []:
        title = str(item.get("title") or "Meal")
        qty = int(item.get("qty") or 1)
        line_total = format_amount(float(item.get("price") or 0) * qty)
        rows.append(
            f"<tr><td>{html.escape(title)}</td><td>x{qty}</td>"
            f"<td style=\"text-align:right\">{currency} {line_total}</td></tr>"
        )
        lines.append(f"{title} x{qty} ({currency} {line_total})")

    discount_row = ""
    if totals.get("discount"):
        discount_row = (
            f"<tr><td colspan=\"2\">Discount</td>"
            f"<td style=\"text-align:right\">-{currency} {totals['discount']}</td></tr>"
        )

    html_body = f"""<!DOCTYPE html>
<html>
  <body style="font-family:Arial,sans-serif;color:#1f2933">
    <h2>Thanks for your MacroBox order!</h2>
    <p>Delivery on {slot.get("date", "")} at {slot.get("time", "")}.</p>
    <table cellpadding="6" style="border-collapse:collapse;min-width:320px">
      {"".join(rows)}
      {discount_row}
      <tr><td colspan="2"><strong>Paid</strong></td>
        <td style="text-align:right"><strong>{currency} {totals.get("payable", 0)}</strong></td></tr>
    </table>
    <p>{totals.get("totalProtein", 0)} g protein, {totals.get("totalCalories", 0)} kcal in total.</p>
  </body>
</html>"""
    text_body = (
        f"Thanks for your MacroBox order {order_document.get('_id')}.\n"
        f"Items: {', '.join(lines)}.\n"
        f"Paid: {currency} {totals.get('payable', 0)}.\n"
        f"Delivery: {slot.get('date', '')} {slot.get('time', '')}."
    )
    return html_body, text_body


def send_order_confirmation_email(
    order_document: Dict,
    recipient_email: Optional[str],
    *,
    api_key: str,
    sender: str,
    currency: str,
) -> Tuple[bool, Optional[str]]:
    normalized_email = str(recipient_email or "").strip().lower()
    if not normalized_email:
        return False, "Missing customer email for the order receipt."

    html_body, text_body = build_order_email(order_document, currency)
    payload: Dict[str, object] = {
        "from": sender,
        "to": [normalized_email],
        "subject": "Your MacroBox order is confirmed",
        "html": html_body,
        "text": text_body,
    }
    return send_email_via_resend(payload, api_key)
