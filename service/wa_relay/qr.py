"""QR challenge rendering and the small HTML pages built around it."""
from __future__ import annotations

import base64
import html
import io

import qrcode

from .state import StatusSnapshot

_PAGE = """<!DOCTYPE html>
<html>
<head>
    <title>{title}</title>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    {head_extra}
    <style>
        body {{ font-family: Arial, sans-serif; display: flex; justify-content: center; align-items: center;
               min-height: 100vh; margin: 0; padding: 20px; background: {background}; }}
        .container {{ background: white; padding: 40px; border-radius: 20px; box-shadow: 0 20px 60px rgba(0,0,0,0.3);
                     text-align: center; max-width: 600px; width: 100%; }}
        .status {{ display: inline-block; padding: 10px 20px; border-radius: 20px; font-weight: bold; margin: 20px 0; }}
        .status.ready {{ background: #d4edda; color: #155724; }}
        .status.initializing {{ background: #fff3cd; color: #856404; }}
        .status.offline {{ background: #f8d7da; color: #721c24; }}
        .btn {{ display: inline-block; padding: 15px 30px; margin: 10px; background: #25D366; color: white;
               text-decoration: none; border-radius: 10px; font-weight: bold; }}
        .info {{ text-align: left; background: #f8f9fa; padding: 20px; border-radius: 10px; margin-top: 20px; }}
        .warning {{ background: #fff3cd; border-left: 4px solid #ffc107; padding: 15px; margin-top: 20px;
                   border-radius: 4px; text-align: left; }}
        img {{ max-width: 400px; width: 100%; border: 4px solid #25D366; border-radius: 12px; margin: 20px 0; }}
    </style>
</head>
<body>
    <div class="container">
{body}
    </div>
</body>
</html>
"""

_PURPLE = "linear-gradient(135deg, #667eea 0%, #764ba2 100%)"
_GREEN = "linear-gradient(135deg, #25D366 0%, #128C7E 100%)"


def render_qr_png(blob: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=4,
    )
    qr.add_data(blob)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def qr_data_url(blob: str) -> str:
    return "data:image/png;base64," + base64.b64encode(render_qr_png(blob)).decode("ascii")


def _badge(snapshot: StatusSnapshot) -> tuple[str, str]:
    if snapshot.ready:
        return "ready", "✅ Connected"
    if snapshot.initializing:
        return "initializing", "⏳ Initializing..."
    if snapshot.exhausted:
        return "offline", "❌ Offline - reconnect attempts exhausted"
    return "offline", "❌ Offline"


def index_page(snapshot: StatusSnapshot) -> str:
    css_class, label = _badge(snapshot)
    body = f"""        <h1>🚀 Expirel WhatsApp Service</h1>
        <div class="status {css_class}">{label}</div>
        <div>
            <a href="/qr" class="btn">📱 View QR Code</a>
            <a href="/status" class="btn" style="background: #667eea;">📊 Check Status</a>
        </div>
        <div class="info">
            <strong>📋 Quick Links:</strong><br><br>
            <strong>QR Code:</strong> <a href="/qr">/qr</a><br>
            <strong>Status:</strong> <a href="/status">/status</a><br>
            <strong>Health:</strong> <a href="/health">/health</a>
        </div>"""
    return _PAGE.format(title="Expirel WhatsApp Service", head_extra="", background=_PURPLE, body=body)


def pending_page(snapshot: StatusSnapshot) -> str:
    if snapshot.ready:
        heading, detail = "Already Connected!", "✅ WhatsApp is connected"
    elif snapshot.initializing:
        heading, detail = "Generating QR Code...", "⏳ Initializing connection..."
    else:
        heading, detail = "Generating QR Code...", "❌ Not connected"
    note = "" if snapshot.ready else "<br><br><strong>Note:</strong> Page will auto-refresh every 3 seconds until QR appears."
    refresh = "" if snapshot.ready else '<meta http-equiv="refresh" content="3">'
    body = f"""        <h1>⏳ {heading}</h1>
        <div class="warning"><strong>Status:</strong> {detail}{note}</div>"""
    return _PAGE.format(title="WhatsApp QR Code", head_extra=refresh, background=_PURPLE, body=body)


def qr_page(blob: str) -> str:
    body = f"""        <h1>📱 Scan QR Code</h1>
        <p>Connect your WhatsApp Business Account</p>
        <img src="{html.escape(qr_data_url(blob))}" alt="WhatsApp QR Code" />
        <div class="info">
            <h3>📋 How to Connect:</h3>
            <ol>
                <li>Open <strong>WhatsApp</strong> on your phone</li>
                <li>Go to <strong>Settings</strong> → <strong>Linked Devices</strong></li>
                <li>Tap <strong>"Link a Device"</strong></li>
                <li>Scan this QR code</li>
                <li>Wait for confirmation ✅</li>
            </ol>
        </div>
        <div class="warning">
            <strong>⚠️ Note:</strong> QR code expires after 60 seconds. Refresh this page if expired.
        </div>"""
    return _PAGE.format(title="Scan WhatsApp QR Code", head_extra="", background=_GREEN, body=body)


__all__ = ["index_page", "pending_page", "qr_data_url", "qr_page", "render_qr_png"]
