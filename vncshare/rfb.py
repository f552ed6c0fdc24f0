"""
RFB protocol definitions, server side.

Message type tags, encoding identifiers, the pixel format block and the
big-endian integer primitives shared by the handshake, the message decoders
and the frame buffer update encoder.

Reference:
https://www.rfc-editor.org/rfc/rfc6143

MIT License
"""

from dataclasses import astuple, dataclass
from enum import IntEnum
from struct import Struct
from typing import ClassVar, Tuple, cast

RFB_VERSION = b"RFB 003.003\n"
SECURITY_NONE = b"\x00\x00\x00\x01"


class VNCShareException(Exception):
    pass


class ProtocolError(VNCShareException):
    """VNC Protocol error"""


class UnsupportedFormat(ProtocolError):
    """Viewer asked for a pixel format the server cannot produce"""


class IntEnumLookup(IntEnum):
    @classmethod
    def lookup(cls, value: int) -> object:
        return cls._value2member_map_.get(value, f"<{cls.__name__}.UNKNOWN: {value:x}>")


class Encoding(IntEnumLookup):
    """encoding-type announced by SetEncodings()"""

    @staticmethod
    def s32(value: int) -> int:
        return value - 0x1_0000_0000 if value >= 0x8000_0000 else value

    def __new__(cls, value: int) -> "Encoding":
        return int.__new__(cls, cls.s32(value))

    @classmethod
    def lookup(cls, value: int) -> object:
        return super().lookup(cls.s32(value))

    RAW = 0
    COPY_RECTANGLE = 1
    RRE = 2
    CORRE = 4
    HEXTILE = 5
    ZLIB = 6
    TIGHT = 7
    ZLIBHEX = 8
    TRLE = 15
    ZRLE = 16
    JPEG = 21
    PSEUDO_DESKTOP_SIZE = -223
    PSEUDO_LAST_RECT = -224
    POINTER_POS = -225
    PSEUDO_CURSOR = -239
    PSEUDO_X_CURSOR = -240
    PSEUDO_QEMU_EXTENDED_KEY_EVENT = -258
    TIGHT_PNG = -260
    PSEUDO_DESKTOP_NAME = -307
    PSEUDO_EXTENDED_DESKTOP_SIZE = -308
    PSEUDO_FENCE = -312
    PSEUDO_CONTINUOUS_UPDATES = -313
    PSEUDO_EXTENDED_CLIPBOARD = 0xC0A1E5CE


class MsgS2C(IntEnumLookup):
    """RFC 6143 §7.6. Server-to-Client Messages."""

    FRAMEBUFFER_UPDATE = 0
    SET_COLOUR_MAP_ENTRIES = 1
    BELL = 2
    SERVER_CUT_TEXT = 3


class MsgC2S(IntEnumLookup):
    """RFC 6143 §7.5. Client-to-Server Messages."""

    SET_PIXEL_FORMAT = 0
    SET_ENCODINGS = 2
    FRAMEBUFFER_UPDATE_REQUEST = 3
    KEY_EVENT = 4
    POINTER_EVENT = 5
    CLIENT_CUT_TEXT = 6


class MouseButton(IntEnum):
    """button argument of IScreen.mouseButton()"""

    LEFT = 1
    MIDDLE = 2
    RIGHT = 3


# button-mask values of PointerEvent understood by the server
BUTTON_MASK_MOVE = 0
BUTTON_MASK_CLICK = {
    1: MouseButton.LEFT,
    3: MouseButton.MIDDLE,
    4: MouseButton.RIGHT,
}
BUTTON_MASK_WHEEL_UP = 8
BUTTON_MASK_WHEEL_DOWN = 16


# keycodes
# for KeyEvent()
KEY_BackSpace = 0xFF08
KEY_Tab = 0xFF09
KEY_Return = 0xFF0D
KEY_Escape = 0xFF1B
KEY_Insert = 0xFF63
KEY_Delete = 0xFFFF
KEY_Home = 0xFF50
KEY_End = 0xFF57
KEY_PageUp = 0xFF55
KEY_PageDown = 0xFF56
KEY_Left = 0xFF51
KEY_Up = 0xFF52
KEY_Right = 0xFF53
KEY_Down = 0xFF54
KEY_F1 = 0xFFBE
KEY_F2 = 0xFFBF
KEY_F3 = 0xFFC0
KEY_F4 = 0xFFC1
KEY_F5 = 0xFFC2
KEY_F6 = 0xFFC3
KEY_F7 = 0xFFC4
KEY_F8 = 0xFFC5
KEY_F9 = 0xFFC6
KEY_F10 = 0xFFC7
KEY_F11 = 0xFFC8
KEY_F12 = 0xFFC9
KEY_ShiftLeft = 0xFFE1
KEY_ShiftRight = 0xFFE2
KEY_ControlLeft = 0xFFE3
KEY_ControlRight = 0xFFE4
KEY_MetaLeft = 0xFFE7
KEY_MetaRight = 0xFFE8
KEY_AltLeft = 0xFFE9
KEY_AltRight = 0xFFEA
KEY_Super_L = 0xFFEB  # windows-key, apple command key
KEY_Super_R = 0xFFEC  # windows-key, apple command key
KEY_Caps_Lock = 0xFFE5
KEY_Num_Lock = 0xFF7F
KEY_Scroll_Lock = 0xFF14
KEY_Pause = 0xFF13
KEY_KP_Enter = 0xFF8D
KEY_SpaceBar = 0x0020


# big-endian integer primitives
U8 = Struct("!B")
U16 = Struct("!H")
U32 = Struct("!I")
S32 = Struct("!i")


def write_u8(value: int) -> bytes:
    return U8.pack(value)


def write_u16(value: int) -> bytes:
    return U16.pack(value)


def write_u32(value: int) -> bytes:
    return U32.pack(value)


def write_s32(value: int) -> bytes:
    return S32.pack(value)


def read_u8(block: bytes, offset: int = 0) -> int:
    return cast(int, U8.unpack_from(block, offset)[0])


def read_u16(block: bytes, offset: int = 0) -> int:
    return cast(int, U16.unpack_from(block, offset)[0])


def read_u32(block: bytes, offset: int = 0) -> int:
    return cast(int, U32.unpack_from(block, offset)[0])


def read_s32(block: bytes, offset: int = 0) -> int:
    return cast(int, S32.unpack_from(block, offset)[0])


@dataclass(frozen=True)
class PixelFormat:
    """RFC 6143 §7.4. Pixel Format Data Structure"""

    bpp: int = 32  # u8: bits-per-pixel
    depth: int = 24  # u8
    bigendian: bool = False  # u8
    truecolor: bool = True  # u8
    redmax: int = 255  # u16
    greenmax: int = 255  # u16
    bluemax: int = 255  # u16
    redshift: int = 16  # u8
    greenshift: int = 8  # u8
    blueshift: int = 0  # u8

    STRUCT: ClassVar = Struct("!BB??HHHBBBxxx")
    SUPPORTED_BPP: ClassVar = frozenset({8, 16, 32})

    @property
    def bypp(self) -> int:  # bytes-per-pixel
        return (7 + self.bpp) // 8

    @property
    def channels(self) -> Tuple[Tuple[int, int], ...]:
        return (
            (self.redmax, self.redshift),
            (self.greenmax, self.greenshift),
            (self.bluemax, self.blueshift),
        )

    def validate(self) -> None:
        """Raise UnsupportedFormat unless pixels in this format can be produced."""
        if self.bpp not in self.SUPPORTED_BPP:
            raise UnsupportedFormat(f"bpp={self.bpp}")
        if not 1 <= self.depth <= self.bpp:
            raise UnsupportedFormat(f"depth={self.depth} bpp={self.bpp}")
        if not self.truecolor:
            if self.bpp != 8:
                raise UnsupportedFormat(f"colour map with bpp={self.bpp}")
            return

        used = 0
        for max_, shift in self.channels:
            if not 1 <= max_ <= 0xFFFF or max_ & (max_ + 1):
                raise UnsupportedFormat(f"max={max_} not a 2**n-1")
            if shift + max_.bit_length() > self.bpp:
                raise UnsupportedFormat(f"shift={shift} not in bpp={self.bpp}")
            bits = max_ << shift
            if used & bits:
                raise UnsupportedFormat(f"overlapping channels in {self}")
            used |= bits

    @classmethod
    def for_depth(cls, depth: int) -> "PixelFormat":
        """Pixel format announced in ServerInit for a host display depth."""
        if depth == 16:
            return cls(16, 16, False, True, 31, 63, 31, 11, 5, 0)
        if depth == 8:
            return BGR233
        # viewers do not support 24 bits-per-pixel
        return cls(32, 24, False, True, 255, 255, 255, 16, 8, 0)

    @classmethod
    def from_bytes(cls, block: bytes) -> "PixelFormat":
        return cls(*cls.STRUCT.unpack(block))

    def to_bytes(self) -> bytes:
        return cast(bytes, self.STRUCT.pack(*astuple(self)))


BGR233 = PixelFormat(8, 8, False, True, 7, 7, 3, 0, 3, 6)
