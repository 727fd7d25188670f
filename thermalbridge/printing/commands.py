"""ESC/POS command encoder.

Pure functions from print intents to byte sequences. Multi-frame intents
(formatted text, barcode, QR) return ``PrintCommand`` lists because each frame
goes to the printer as its own bulk transfer.
"""

from typing import Iterable, List

from escpos.constants import ESC, GS, HW_INIT, TXT_NORMAL, TXT_STYLE

from ..core.models import PrintCommand


TEXT_ENCODING = "latin-1"

INIT = HW_INIT                                   # 1B 40
CUT_FULL = GS + b"\x56\x41\x10"                  # 1D 56 41 10
CUT_PARTIAL = GS + b"\x56\x42\x00"               # 1D 56 42 00
BOLD_ON = TXT_STYLE["bold"][True]                # 1B 45 01
BOLD_OFF = TXT_STYLE["bold"][False]              # 1B 45 00
ALIGN_LEFT = TXT_STYLE["align"]["left"]          # 1B 61 00
ALIGN_CENTER = TXT_STYLE["align"]["center"]      # 1B 61 01
ALIGN_RIGHT = TXT_STYLE["align"]["right"]        # 1B 61 02
SIZE_DOUBLE = ESC + b"\x21\x30"                  # 1B 21 30
SIZE_NORMAL = TXT_NORMAL                         # 1B 21 00
DRAWER_KICK = ESC + b"\x70\x00\x19\xfa"          # 1B 70 00 19 FA

BARCODE_CODE128 = 73
BARCODE_WIDTH = 2
BARCODE_MAX_DATA = 255

QR_MODEL_2 = 0x32
QR_ERROR_CORRECTION_M = 0x31
# GS ( k store: 4 <= pL + pH * 256 <= 7092
QR_MAX_DATA = 7089

# Transfer timeouts in milliseconds
TIMEOUT_FORMAT = 1000
TIMEOUT_CONTROL = 3000
TIMEOUT_TEXT = 5000
TIMEOUT_RAW = 10000

_ALIGNMENTS = {
    "left": ALIGN_LEFT,
    "center": ALIGN_CENTER,
    "right": ALIGN_RIGHT,
}

_SIZES = {
    "normal": SIZE_NORMAL,
    "double": SIZE_DOUBLE,
    "large": SIZE_DOUBLE,
}


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, int(value)))


def encode_text(value: str) -> bytes:
    return (value or "").encode(TEXT_ENCODING, errors="replace")


def initialize() -> bytes:
    return INIT


def cut(partial: bool = False) -> bytes:
    return CUT_PARTIAL if partial else CUT_FULL


def feed(lines: int = 3) -> bytes:
    return ESC + b"\x64" + bytes([_clamp(lines, 0, 255)])


def bold(on: bool) -> bytes:
    return BOLD_ON if on else BOLD_OFF


def align(name: str = "left") -> bytes:
    """Unknown names fall back to left alignment."""
    return _ALIGNMENTS.get((name or "left").strip().lower(), ALIGN_LEFT)


def size(name: str = "normal") -> bytes:
    return _SIZES.get((name or "normal").strip().lower(), SIZE_NORMAL)


def open_drawer() -> bytes:
    return DRAWER_KICK


def text(value: str) -> bytes:
    return encode_text(value) + b"\n"


def raw(command) -> bytes:
    """Raw command strings map one character to one byte (Latin-1)."""
    if isinstance(command, (bytes, bytearray)):
        return bytes(command)
    return encode_text(str(command))


def compose_formatted(value: str, alignment: str = "left", text_size: str = "normal",
                      emphasized: bool = False) -> List[PrintCommand]:
    """Formatted line as independent frames.

    Order: align, size, bold on, text, bold off, normal size, left align. The
    frame labelled "text" is the one whose transfer result is reported.
    """
    commands = [
        PrintCommand(align(alignment), TIMEOUT_FORMAT, "align"),
        PrintCommand(size(text_size), TIMEOUT_FORMAT, "size"),
    ]
    if emphasized:
        commands.append(PrintCommand(BOLD_ON, TIMEOUT_FORMAT, "bold-on"))
    commands.append(PrintCommand(text(value), TIMEOUT_TEXT, "text"))
    if emphasized:
        commands.append(PrintCommand(BOLD_OFF, TIMEOUT_FORMAT, "bold-off"))
    commands.append(PrintCommand(SIZE_NORMAL, TIMEOUT_FORMAT, "size-reset"))
    commands.append(PrintCommand(ALIGN_LEFT, TIMEOUT_FORMAT, "align-reset"))
    return commands


def barcode_code128(data: str, height: int = 80) -> List[PrintCommand]:
    payload = encode_text(data)[:BARCODE_MAX_DATA]
    return [
        PrintCommand(GS + b"\x68" + bytes([_clamp(height, 1, 255)]), TIMEOUT_FORMAT, "barcode-height"),
        PrintCommand(GS + b"\x77" + bytes([BARCODE_WIDTH]), TIMEOUT_FORMAT, "barcode-width"),
        PrintCommand(
            GS + b"\x6b" + bytes([BARCODE_CODE128, len(payload)]) + payload,
            TIMEOUT_TEXT,
            "barcode-data",
        ),
    ]


def _qr_frame(function: int, body: bytes) -> bytes:
    # GS ( k pL pH cn=49 fn <body>; the length counts cn, fn and the body
    length = len(body) + 2
    return GS + b"\x28\x6b" + bytes([length & 0xFF, (length >> 8) & 0xFF, 0x31, function]) + body


def qr_code(data: str, module_size: int = 6) -> List[PrintCommand]:
    payload = encode_text(data)
    if len(payload) > QR_MAX_DATA:
        raise ValueError(f"QR data too long: {len(payload)} bytes (max {QR_MAX_DATA})")
    return [
        PrintCommand(_qr_frame(0x41, bytes([QR_MODEL_2, 0x00])), TIMEOUT_FORMAT, "qr-model"),
        PrintCommand(_qr_frame(0x43, bytes([_clamp(module_size, 1, 16)])), TIMEOUT_FORMAT, "qr-size"),
        PrintCommand(_qr_frame(0x45, bytes([QR_ERROR_CORRECTION_M])), TIMEOUT_FORMAT, "qr-error-correction"),
        PrintCommand(_qr_frame(0x50, b"\x30" + payload), TIMEOUT_CONTROL, "qr-store"),
        PrintCommand(_qr_frame(0x51, b"\x30"), TIMEOUT_CONTROL, "qr-print"),
    ]


def self_test_page(info_lines: Iterable[str]) -> List[PrintCommand]:
    """Self-test receipt: centered bold header, device info, footer and cut."""
    info = "".join(f"{line}\n" for line in info_lines)
    return [
        PrintCommand(INIT, TIMEOUT_FORMAT, "init"),
        PrintCommand(ALIGN_CENTER, TIMEOUT_FORMAT, "align"),
        PrintCommand(BOLD_ON, TIMEOUT_FORMAT, "bold-on"),
        PrintCommand(text("=== PRINT TEST ==="), TIMEOUT_CONTROL, "header"),
        PrintCommand(BOLD_OFF, TIMEOUT_FORMAT, "bold-off"),
        PrintCommand(ALIGN_LEFT, TIMEOUT_FORMAT, "align-reset"),
        PrintCommand(encode_text(info), TIMEOUT_CONTROL, "info"),
        PrintCommand(ALIGN_CENTER, TIMEOUT_FORMAT, "align"),
        PrintCommand(encode_text("\n" + "=" * 25 + "\n\n\n"), TIMEOUT_CONTROL, "footer"),
        PrintCommand(CUT_FULL, TIMEOUT_FORMAT, "cut"),
    ]
