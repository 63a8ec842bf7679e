import base64

import pytest

from rollcall.modules.errors import InvalidTokenError, ValidationError
from rollcall.modules.qr_generator import (
    QRGenerator,
    build_scan_url,
    generate_token,
    parse_scanned_token,
)

PNG_MAGIC = b'\x89PNG\r\n\x1a\n'


def test_generate_token_is_long_and_url_safe():
    tokens = {generate_token() for _ in range(50)}
    assert len(tokens) == 50
    for token in tokens:
        assert len(token) >= 43
        assert parse_scanned_token(token) == token


def test_generate_token_rejects_weak_sizes():
    with pytest.raises(ValidationError):
        generate_token(8)


def test_build_scan_url():
    assert build_scan_url('https://rollcall.example.edu/', 'abc_DEF-1') == \
        'https://rollcall.example.edu/scan?token=abc_DEF-1'


@pytest.mark.parametrize('scanned', [
    'https://rollcall.example.edu/scan?token=abc123',
    'http://localhost:5000/dashboard/student/scan?token=abc123',
    'https://rollcall.example.edu/scan?lang=en&token=abc123',
    '/scan?token=abc123',
    'token=abc123',
    'abc123',
    '  abc123\n',
])
def test_parse_scanned_token_accepts_urls_and_bare_tokens(scanned):
    assert parse_scanned_token(scanned) == 'abc123'


@pytest.mark.parametrize('scanned', [
    '',
    None,
    '   ',
    'https://rollcall.example.edu/scan',
    'https://rollcall.example.edu/scan?token=',
    'https://rollcall.example.edu/scan?token=a&token=b',
    'ftp://rollcall.example.edu/scan?token=abc123',
    'not a token',
    'abc;drop table',
])
def test_parse_scanned_token_rejects_malformed_text(scanned):
    with pytest.raises(InvalidTokenError):
        parse_scanned_token(scanned)


def test_render_png():
    png = QRGenerator(box_size=2).render_png('https://rollcall.example.edu/scan?token=abc')
    assert png.startswith(PNG_MAGIC)


def test_generate_session_qr_code_with_caption():
    generator = QRGenerator(box_size=2)
    plain = generator.make_image('https://x.edu/scan?token=abc')
    result = generator.generate_session_qr_code('https://x.edu/scan?token=abc',
                                                class_name='CS 101')

    assert result['qr_data'] == 'https://x.edu/scan?token=abc'
    assert result['mime_type'] == 'image/png'
    assert base64.b64decode(result['image_base64']).startswith(PNG_MAGIC)
    assert plain.size[1] < generator.make_image('https://x.edu/scan?token=abc', 'CS 101').size[1]


def test_unknown_error_correction_level():
    with pytest.raises(ValidationError):
        QRGenerator(error_correction='X')
