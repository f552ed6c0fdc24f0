"""
Twisted based RFB server protocol and factory

Each accepted connection gets one RFBServer instance which runs the
handshake, then reads client messages and answers FramebufferUpdateRequests
with raw encoded screen contents taken from the factory's IScreen.

Reference:
https://www.rfc-editor.org/rfc/rfc6143

MIT License
"""

import logging
from struct import pack, unpack
from typing import Any, Callable, List, Optional, Sequence, Set, Tuple

from twisted.internet import protocol, task
from twisted.internet.defer import Deferred
from twisted.internet.interfaces import IReactorTime, ITCPTransport
from twisted.protocols.policies import TimeoutMixin
from twisted.python.failure import Failure

from . import rfb
from .colormap import ColorMap8bit
from .framebuffer import Rectangle, encode_pixels, framebuffer_update
from .rfb import Encoding, MsgC2S, MsgS2C, PixelFormat, ProtocolError
from .screen import IScreen

log = logging.getLogger(__name__)


class RFBServer(protocol.Protocol, TimeoutMixin):  # type: ignore[misc]
    """One viewer session."""

    def __init__(self) -> None:
        self._packet = bytearray()
        self._expected_handler: Callable[..., None] = self._handleVersion
        self._expected_len = 12
        self._expected_args: Tuple[Any, ...] = ()
        self._expected_peek = False
        self._already_expecting = False
        self._closing = False
        # type byte of the message being decoded, peeked before it is consumed
        self._lookahead: Optional[int] = None

        self.pixel_format = PixelFormat()
        self.encodings: Set[int] = set()
        self.width = 0
        self.height = 0
        self.incremental = False
        # region of the pending incremental request
        self.requested: Optional[Rectangle] = None
        self.shared = False

    @property
    def screen(self) -> IScreen:
        return self.factory.screen

    @property
    def colormap(self) -> ColorMap8bit:
        return self.factory.colormap

    def connectionMade(self) -> None:
        super().connectionMade()
        if ITCPTransport.providedBy(self.transport):
            self.transport.setTcpNoDelay(True)

        self.peer = self.transport.getPeer()
        log.info("new connection from %s", getattr(self.peer, "host", self.peer))
        self.setTimeout(self.factory.timeout)
        self.factory.sessionStarted(self)

        self.transport.write(rfb.RFB_VERSION)
        self.expect(self._handleVersion, 12)

    def connectionLost(self, reason: Failure = protocol.connectionDone) -> None:
        self.setTimeout(None)
        log.info(
            "client %s gone: %s",
            getattr(self.peer, "host", self.peer),
            reason.getErrorMessage(),
        )
        self.factory.sessionEnded(self)

    def timeoutConnection(self) -> None:
        log.info("closing idle connection from %s", getattr(self.peer, "host", self.peer))
        self.transport.loseConnection()

    # ------------------------------------------------------
    # states used on connection startup
    # ------------------------------------------------------

    def _handleVersion(self, block: bytes) -> None:
        if not block.startswith(b"RFB"):
            raise ProtocolError(f"invalid initial client message {block!r}")
        log.info("Protocol version %s", block.decode("ascii", "replace").strip())
        self.transport.write(rfb.SECURITY_NONE)
        self.expect(self._handleClientInit, 1)

    def _handleClientInit(self, block: bytes) -> None:
        (self.shared,) = unpack("!?", block)
        log.debug("Client shares: %s", self.shared)
        self._sendServerInit()
        self._doConnection()

    def _sendServerInit(self) -> None:
        self.width = self.screen.getScreenWidth()
        self.height = self.screen.getScreenHeight()
        self.pixel_format = PixelFormat.for_depth(self.screen.getDepth())
        name = self.factory.title.encode("utf-8")[:255]
        log.debug(f"Native {self.pixel_format} {self.width}x{self.height}")
        self.transport.write(
            pack(
                "!HH16sI",
                self.width,
                self.height,
                self.pixel_format.to_bytes(),
                len(name),
            )
            + name
        )

    # ------------------------------------------------------
    # Client to server messages
    # ------------------------------------------------------

    def _doConnection(self) -> None:
        self.expect(self._handleConnection, 1, peek=True)

    def _handleConnection(self, block: bytes) -> None:
        self._lookahead = msgid = block[0]
        if msgid == MsgC2S.SET_PIXEL_FORMAT:
            self.expect(self._handleSetPixelFormat, 20)
        elif msgid == MsgC2S.SET_ENCODINGS:
            self.expect(self._handleSetEncodings, 4)
        elif msgid == MsgC2S.FRAMEBUFFER_UPDATE_REQUEST:
            self.expect(self._handleFramebufferUpdateRequest, 10)
        elif msgid == MsgC2S.KEY_EVENT:
            self.expect(self._handleKeyEvent, 8)
        elif msgid == MsgC2S.POINTER_EVENT:
            self.expect(self._handlePointerEvent, 6)
        elif msgid == MsgC2S.CLIENT_CUT_TEXT:
            self.expect(self._handleClientCutText, 8)
        else:
            # the stream cannot be resynchronized without knowing the length
            raise ProtocolError(f"unknown message received {MsgC2S.lookup(msgid)!r}")

    def _checkType(self, block: bytes, msgid: MsgC2S) -> None:
        if block[0] != msgid:
            raise ProtocolError(f"expected {msgid!r}, got {MsgC2S.lookup(block[0])!r}")

    def _handleSetPixelFormat(self, block: bytes) -> None:
        self._checkType(block, MsgC2S.SET_PIXEL_FORMAT)
        (pixformat,) = unpack("!xxxx16s", block)
        pixel_format = PixelFormat.from_bytes(pixformat)
        pixel_format.validate()
        log.debug(f"Client selected {pixel_format} bytes={pixel_format.bypp}")
        self.pixel_format = pixel_format
        if not pixel_format.truecolor:
            self.sendColourMapEntries()
        self._doConnection()

    def _handleSetEncodings(self, block: bytes) -> None:
        self._checkType(block, MsgC2S.SET_ENCODINGS)
        (nencodings,) = unpack("!xxH", block)
        self.expect(self._handleEncodingList, 4 * nencodings)

    def _handleEncodingList(self, block: bytes) -> None:
        encodings = unpack(f"!{len(block) // 4}i", block)
        for encoding in encodings:
            log.debug(f"Client announces {Encoding.lookup(encoding)!r}")
        self.encodings = set(encodings)
        self._doConnection()

    def _handleFramebufferUpdateRequest(self, block: bytes) -> None:
        self._checkType(block, MsgC2S.FRAMEBUFFER_UPDATE_REQUEST)
        incremental, x, y, width, height = unpack("!xBHHHH", block)
        self.width, self.height = width, height
        if incremental:
            # sent later by the ScreenWatcher, once the screen changes
            self.incremental = True
            self.requested = Rectangle(x, y, width, height)
        else:
            log.debug("Full frame buffer update requested")
            self.incremental = False
            self.requested = None
            self.sendFramebufferUpdate(x, y, width, height)
        self._doConnection()

    def _handleKeyEvent(self, block: bytes) -> None:
        self._checkType(block, MsgC2S.KEY_EVENT)
        down, key = unpack("!x?xxI", block)
        self.screen.keyDown(key, down)
        self._doConnection()

    def _handlePointerEvent(self, block: bytes) -> None:
        self._checkType(block, MsgC2S.POINTER_EVENT)
        buttonmask, x, y = unpack("!xBHH", block)
        self.handlePointer(buttonmask, x, y)
        self._doConnection()

    def _handleClientCutText(self, block: bytes) -> None:
        self._checkType(block, MsgC2S.CLIENT_CUT_TEXT)
        (length,) = unpack("!xxxxI", block)
        if length > self.factory.max_cut_text:
            raise ProtocolError(f"cut text of {length} bytes")
        self.expect(self._handleClientCutTextValue, length)

    def _handleClientCutTextValue(self, block: bytes) -> None:
        self.cutText(block.decode("iso-8859-1"))
        self._doConnection()

    def handlePointer(self, buttonmask: int, x: int, y: int) -> None:
        """Translate a PointerEvent into IScreen calls.

        Only single buttons are understood: a mask of 1, 3 or 4 is a click
        of the left, middle or right button, 8 and 16 scroll up and down.
        Any other mask just moves the pointer.
        """
        if buttonmask == rfb.BUTTON_MASK_MOVE:
            self.screen.mouseMove(x, y)
        elif buttonmask in rfb.BUTTON_MASK_CLICK:
            button = rfb.BUTTON_MASK_CLICK[buttonmask]
            self.screen.mouseButton(button, True, x, y)
            self.screen.mouseButton(button, False, x, y)
        elif buttonmask == rfb.BUTTON_MASK_WHEEL_UP:
            self.screen.mouseWheel(True)
        elif buttonmask == rfb.BUTTON_MASK_WHEEL_DOWN:
            self.screen.mouseWheel(False)
        else:
            log.debug("button mask %#x not supported, moving only", buttonmask)
            self.screen.mouseMove(x, y)

    def cutText(self, text: str) -> None:
        """The client has new ISO 8859-1 (Latin-1) text in its cut buffer.
        (aka clipboard)"""
        log.debug(f"clipboard paste {text!r}")

    # ------------------------------------------------------
    # incomming data redirector
    # ------------------------------------------------------

    def dataReceived(self, data: bytes) -> None:
        if self._closing:
            return
        self.resetTimeout()
        self._packet.extend(data)
        try:
            self._handleExpected()
        except ProtocolError as e:
            log.error(f"closing connection: {e}")
            self._closing = True
            del self._packet[:]
            self.transport.loseConnection()

    def _handleExpected(self) -> None:
        try:
            while not self._closing and len(self._packet) >= self._expected_len:
                self._already_expecting = True
                block = bytes(self._packet[: self._expected_len])
                if not self._expected_peek:
                    del self._packet[: self._expected_len]
                self._expected_handler(block, *self._expected_args)
        finally:
            self._already_expecting = False

    def expect(
        self,
        handler: Callable[..., None],
        size: int,
        *args: Any,
        peek: bool = False,
    ) -> None:
        """Call handler once size bytes are buffered.
        With peek the bytes stay in the buffer for the next handler."""
        self._expected_handler = handler
        self._expected_len = size
        self._expected_args = args
        self._expected_peek = peek
        if not self._already_expecting:
            self._handleExpected()  # just in case that there is already enough data

    # ------------------------------------------------------
    # server -> client messages
    # ------------------------------------------------------

    def _encodePixels(self, rect: Rectangle, pixels: Sequence[int]) -> bytes:
        if len(pixels) != rect.width * rect.height:
            raise ValueError(
                f"screen returned {len(pixels)} pixels for {rect.width}x{rect.height}"
            )
        return encode_pixels(pixels, self.pixel_format, self.colormap)

    def sendFramebufferUpdate(
        self,
        x: int,
        y: int,
        width: int,
        height: int,
        pixels: Optional[Sequence[int]] = None,
    ) -> bool:
        """Send one raw rectangle, pixels are fetched from the screen if not given.

        Rectangles outside the known screen size are dropped, returns False then.
        """
        rect = Rectangle(x, y, width, height, Encoding.RAW)
        if not rect.fits(self.width, self.height):
            log.error(
                "Invalid frame update request: x, y = %d, %d, %d x %d,"
                " screen %d x %d",
                x,
                y,
                width,
                height,
                self.width,
                self.height,
            )
            return False

        if pixels is None:
            pixels = self.screen.getImageBuffer(x, y, width, height)
        payload = self._encodePixels(rect, pixels)
        self.transport.write(framebuffer_update([(rect, payload)]))
        log.debug(
            "Framebuffer update at (%d, %d) %dx%d, incremental: %s, bpp: %d",
            x,
            y,
            width,
            height,
            self.incremental,
            self.pixel_format.bpp,
        )
        return True

    def sendDesktopSize(self) -> bool:
        """Tell the client about a new screen size, with the whole new screen.

        Only sent to clients announcing the DesktopSize pseudo encoding,
        returns False otherwise.
        """
        if Encoding.PSEUDO_DESKTOP_SIZE not in self.encodings:
            log.warning("Client does not support DesktopSize pseudo encoding")
            return False

        width = self.screen.getScreenWidth()
        height = self.screen.getScreenHeight()
        self.width, self.height = width, height

        screen_rect = Rectangle(0, 0, width, height, Encoding.RAW)
        size_rect = Rectangle(0, 0, width, height, Encoding.PSEUDO_DESKTOP_SIZE)
        payload = self._encodePixels(
            screen_rect, self.screen.getImageBuffer(0, 0, width, height)
        )
        self.transport.write(
            framebuffer_update([(screen_rect, payload), (size_rect, None)])
        )
        # the whole new screen answers any pending incremental request
        self.incremental = False
        self.requested = None
        log.info("New screen size: %d x %d", width, height)
        return True

    def sendColourMapEntries(self) -> None:
        """Send the whole 8-bit palette to a colour mapped client."""
        self.transport.write(
            pack("!BxHH", MsgS2C.SET_COLOUR_MAP_ENTRIES, 0, len(self.colormap.palette))
            + self.colormap.colourMapEntries()
        )


class RFBServerFactory(protocol.ServerFactory):  # type: ignore[misc]
    """A factory for remote frame buffer sessions sharing one screen."""

    protocol = RFBServer

    title = "vncshare"
    timeout: Optional[float] = None
    max_cut_text = 1024 * 1024

    def __init__(self, screen: IScreen, colormap: Optional[ColorMap8bit] = None) -> None:
        self.screen = screen
        if colormap is None:
            colormap = ColorMap8bit.from_pixel_format(rfb.BGR233)
        self.colormap = colormap
        self.sessions: Set[RFBServer] = set()

    def sessionStarted(self, session: RFBServer) -> None:
        self.sessions.add(session)

    def sessionEnded(self, session: RFBServer) -> None:
        self.sessions.discard(session)


def crop(pixels: Sequence[int], stride: int, rect: Rectangle) -> List[int]:
    """Row-major pixels of rect, taken from a screen stride pixels wide."""
    region: List[int] = []
    for row in range(rect.y, rect.y + rect.height):
        start = row * stride + rect.x
        region.extend(pixels[start : start + rect.width])
    return region


class ScreenWatcher:
    """Polls the screen and pushes changes to the factory's sessions.

    Sessions waiting for an incremental update get the region they asked
    for when the screen contents change; a change of the screen size is announced to all
    sessions with sendDesktopSize().
    """

    def __init__(
        self,
        factory: RFBServerFactory,
        interval: float,
        clock: Optional[IReactorTime] = None,
    ) -> None:
        self.factory = factory
        self.interval = interval
        self.size: Optional[Tuple[int, int]] = None
        self.pixels: Optional[Sequence[int]] = None
        self._loop = task.LoopingCall(self.poll)
        if clock is not None:
            self._loop.clock = clock

    def start(self) -> Deferred:
        return self._loop.start(self.interval, now=False)

    def stop(self) -> None:
        if self._loop.running:
            self._loop.stop()

    def poll(self) -> None:
        screen = self.factory.screen
        size = (screen.getScreenWidth(), screen.getScreenHeight())
        if self.size is not None and size != self.size:
            self.size = size
            self.pixels = None
            for session in list(self.factory.sessions):
                session.sendDesktopSize()
            return
        self.size = size

        waiting = [s for s in self.factory.sessions if s.incremental]
        if not waiting:
            return

        pixels = screen.getImageBuffer(0, 0, *size)
        if pixels == self.pixels:
            return
        self.pixels = pixels
        full = Rectangle(0, 0, *size)
        for session in waiting:
            rect = session.requested or full
            if not rect.fits(*size):
                log.warning(
                    "requested region %r is outside the %dx%d screen", rect, *size
                )
                continue
            region = pixels if rect == full else crop(pixels, size[0], rect)
            # the flag stays set until the viewer actually got its update
            if session.sendFramebufferUpdate(
                rect.x, rect.y, rect.width, rect.height, region
            ):
                session.incremental = False
