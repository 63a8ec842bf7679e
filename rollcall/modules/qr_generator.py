"""
QR Code Generator Module - Rollcall QR Attendance

This module handles the attendance token and its QR code:
- Cryptographically random session tokens
- Scan URLs of the form ``<origin>/scan?token=<token>``
- QR code PNG rendering with an optional caption under the code
- Strict parsing of scanned text (full URL, relative URL or bare token)
"""

import base64
import io
import logging
import re
import secrets
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import qrcode
from PIL import Image, ImageDraw, ImageFont

from rollcall.modules.errors import InvalidTokenError, ValidationError

SCAN_PATH = '/scan'

TOKEN_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')
MAX_TOKEN_LENGTH = 256

ERROR_CORRECTION_LEVELS = {
    'L': qrcode.constants.ERROR_CORRECT_L,  # ~7% error correction
    'M': qrcode.constants.ERROR_CORRECT_M,  # ~15% error correction
    'Q': qrcode.constants.ERROR_CORRECT_Q,  # ~25% error correction
    'H': qrcode.constants.ERROR_CORRECT_H   # ~30% error correction
}


def generate_token(num_bytes: int = 32) -> str:
    """Return a URL-safe random token carrying ``num_bytes`` of entropy."""
    if num_bytes < 16:
        raise ValidationError('Session tokens need at least 16 random bytes')
    return secrets.token_urlsafe(num_bytes)


def build_scan_url(origin: str, token: str) -> str:
    if not origin:
        raise ValidationError('A public origin is required to build the scan URL')
    return f"{origin.rstrip('/')}{SCAN_PATH}?{urlencode({'token': token})}"


def _token_from_query(query: str) -> str:
    values = parse_qs(query, keep_blank_values=True).get('token', [])
    if len(values) != 1:
        raise InvalidTokenError('QR code does not contain a single attendance token')
    return _validate_raw_token(values[0])


def _validate_raw_token(token: str) -> str:
    token = token.strip()
    if not token or len(token) > MAX_TOKEN_LENGTH or not TOKEN_PATTERN.match(token):
        raise InvalidTokenError()
    return token


def parse_scanned_token(scanned_text: Optional[str]) -> str:
    """
    Extract the session token from the text a QR decoder produced.

    Accepted forms:
        https://host/scan?token=abc   (absolute URL, parsed strictly)
        /scan?token=abc               (relative URL)
        token=abc                     (bare query string)
        abc                           (raw token)

    Raises:
        InvalidTokenError: The text is empty, malformed, or a URL without
            exactly one ``token`` parameter
    """
    text = (scanned_text or '').strip()
    if not text:
        raise InvalidTokenError('No QR code data provided')

    parts = urlsplit(text)
    if parts.scheme and parts.netloc:
        if parts.scheme not in ('http', 'https'):
            raise InvalidTokenError('Unsupported QR code link')
        return _token_from_query(parts.query)

    if text.startswith('/') or '?' in text:
        return _token_from_query(parts.query)

    if text.startswith('token='):
        return _token_from_query(text)

    return _validate_raw_token(text)


class QRGenerator:
    """
    Renders attendance scan URLs as QR code images.
    """

    def __init__(self, box_size: int = 10, border: int = 4,
                 error_correction: str = 'M'):
        """
        Initialize the QR code generator.

        Args:
            box_size (int): Size of each box in pixels
            border (int): Size of the border in boxes (minimum is 4)
            error_correction (str): One of L, M, Q, H
        """
        self.logger = logging.getLogger(__name__)

        if error_correction not in ERROR_CORRECTION_LEVELS:
            raise ValidationError(f'Unknown error correction level: {error_correction}')

        self.default_settings = {
            'error_correction': ERROR_CORRECTION_LEVELS[error_correction],
            'box_size': box_size,
            'border': max(border, 4),
            'fill_color': 'black',
            'back_color': 'white'
        }

    def make_image(self, data: str, caption: Optional[str] = None) -> Image.Image:
        """
        Build the QR code image for ``data``.

        Args:
            data (str): Payload to encode
            caption (str): Optional text drawn under the code

        Returns:
            Image.Image: RGB image
        """
        settings = self.default_settings
        qr = qrcode.QRCode(
            version=None,
            error_correction=settings['error_correction'],
            box_size=settings['box_size'],
            border=settings['border']
        )
        qr.add_data(data)
        qr.make(fit=True)

        img = qr.make_image(
            fill_color=settings['fill_color'],
            back_color=settings['back_color']
        ).get_image().convert('RGB')

        if caption:
            img = self._add_caption(img, caption)
        return img

    def render_png(self, data: str, caption: Optional[str] = None) -> bytes:
        buffer = io.BytesIO()
        self.make_image(data, caption).save(buffer, format='PNG')
        return buffer.getvalue()

    def generate_session_qr_code(self, scan_url: str, class_name: Optional[str] = None,
                                 expires_at: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Render the QR code a teacher projects for a session.

        Args:
            scan_url (str): URL carrying the session token
            class_name (str): Class shown in the caption
            expires_at (datetime): Expiry shown in the caption

        Returns:
            Dict[str, Any]: Image data and metadata
        """
        caption_lines = []
        if class_name:
            caption_lines.append(class_name)
        if expires_at is not None:
            caption_lines.append(f"Expires at: {expires_at.strftime('%H:%M:%S')} UTC")
        caption = '\n'.join(caption_lines) or None

        png = self.render_png(scan_url, caption)
        self.logger.info(f"QR code rendered ({len(png)} bytes)")

        return {
            'qr_data': scan_url,
            'image_base64': base64.b64encode(png).decode('utf-8'),
            'mime_type': 'image/png'
        }

    def _add_caption(self, qr_img: Image.Image, caption: str) -> Image.Image:
        """
        Add caption lines below the QR code, centered.
        """
        lines = caption.splitlines()
        line_height = 22
        original_size = qr_img.size
        new_img = Image.new('RGB', (original_size[0], original_size[1] + line_height * len(lines) + 10), 'white')
        new_img.paste(qr_img, (0, 0))

        draw = ImageDraw.Draw(new_img)
        try:
            font = ImageFont.truetype("arial.ttf", 16)
        except (IOError, OSError):
            font = ImageFont.load_default()

        text_y = original_size[1]
        for line in lines:
            bbox = draw.textbbox((0, 0), line, font=font)
            width = bbox[2] - bbox[0]
            draw.text(((original_size[0] - width) // 2, text_y), line, fill='black', font=font)
            text_y += line_height

        return new_img
