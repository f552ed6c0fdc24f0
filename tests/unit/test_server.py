from struct import pack
from unittest import TestCase, mock

from PIL import Image
from twisted.internet import task
from twisted.internet.testing import StringTransport

from vncshare import rfb
from vncshare.colormap import ColorMap8bit
from vncshare.rfb import MouseButton, PixelFormat
from vncshare.screen import ImageScreen
from vncshare.server import RFBServerFactory, ScreenWatcher

COLORMAP = ColorMap8bit.from_pixel_format(rfb.BGR233)

RED32 = b"\x00\x00\xff\x00"


def update_request(incremental: int, x: int, y: int, w: int, h: int) -> bytes:
    return pack("!BBHHHH", 3, incremental, x, y, w, h)


def set_pixel_format(pf: PixelFormat) -> bytes:
    return b"\x00\x00\x00\x00" + pf.to_bytes()


def set_encodings(*encodings: int) -> bytes:
    return pack(f"!BxH{len(encodings)}i", 2, len(encodings), *encodings)


def pointer_event(mask: int, x: int, y: int) -> bytes:
    return pack("!BBHH", 5, mask, x, y)


class ServerTestCase(TestCase):

    SIZE = (800, 600)
    DEPTH = 24

    def setUp(self) -> None:
        image = Image.new("RGB", self.SIZE, "red")
        self.screen = mock.Mock(wraps=ImageScreen(image, depth=self.DEPTH))
        self.factory = RFBServerFactory(self.screen, colormap=COLORMAP)
        self.clock = task.Clock()

    def connect(self) -> StringTransport:
        self.proto = self.factory.buildProtocol(None)
        self.proto.callLater = self.clock.callLater
        self.transport = StringTransport()
        self.proto.makeConnection(self.transport)
        return self.transport

    def handshake(self) -> bytes:
        tr = self.connect()
        tr.clear()
        self.proto.dataReceived(rfb.RFB_VERSION)
        self.proto.dataReceived(b"\x01")
        data = tr.value()
        tr.clear()
        return data


class TestHandshake(ServerTestCase):

    def test_version_first(self) -> None:
        tr = self.connect()
        assert tr.value() == b"RFB 003.003\n"
        assert self.proto in self.factory.sessions

    def test_server_init(self) -> None:
        data = self.handshake()
        assert data == (
            b"\x00\x00\x00\x01"  # security-type none
            b"\x03\x20"  # width
            b"\x02\x58"  # height
            b"\x20\x18\x00\x01\x00\xff\x00\xff\x00\xff\x10\x08\x00\x00\x00\x00"
            b"\x00\x00\x00\x08"  # name-length
            b"vncshare"
        )
        assert self.proto.shared is True
        assert (self.proto.width, self.proto.height) == (800, 600)

    def test_byte_by_byte(self) -> None:
        tr = self.connect()
        tr.clear()
        for byte in rfb.RFB_VERSION + b"\x00" + update_request(0, 0, 0, 2, 2):
            self.proto.dataReceived(bytes([byte]))
        data = tr.value()
        assert data[:4] == rfb.SECURITY_NONE
        assert data.endswith(RED32 * 4)
        assert self.proto.shared is False

    def test_bad_version(self) -> None:
        tr = self.connect()
        self.proto.dataReceived(b"XYZ 003.003\n\x01")
        assert tr.disconnecting
        assert tr.value() == b"RFB 003.003\n"

    def test_long_title(self) -> None:
        self.factory.title = "x" * 300
        data = self.handshake()
        assert data[4 + 20 : 4 + 24] == b"\x00\x00\x00\xff"
        assert data[4 + 24 :] == b"x" * 255

    def test_utf8_title(self) -> None:
        self.factory.title = "écran"
        data = self.handshake()
        assert data.endswith(b"\x00\x00\x00\x06\xc3\xa9cran")


class TestHandshake16(ServerTestCase):

    DEPTH = 16

    def test_native_format(self) -> None:
        data = self.handshake()
        assert data[8:24] == PixelFormat.for_depth(16).to_bytes()

    def test_update_uses_native_format(self) -> None:
        self.handshake()
        self.proto.dataReceived(update_request(0, 0, 0, 800, 600))
        data = self.transport.value()
        assert len(data) == 4 + 12 + 800 * 600 * 2
        assert data[16:18] == b"\x00\xf8"


class TestFramebufferUpdate(ServerTestCase):

    def test_full_32bit(self) -> None:
        self.handshake()
        self.proto.dataReceived(update_request(0, 0, 0, 800, 600))
        data = self.transport.value()
        assert len(data) == 4 + 12 + 800 * 600 * 4
        assert data[:4] == b"\x00\x00\x00\x01"
        assert data[4:16] == pack("!HHHHi", 0, 0, 800, 600, 0)
        assert data[16:20] == RED32
        self.screen.getImageBuffer.assert_called_once_with(0, 0, 800, 600)

    def test_full_8bit(self) -> None:
        self.handshake()
        self.proto.dataReceived(set_pixel_format(rfb.BGR233))
        assert self.transport.value() == b""
        self.proto.dataReceived(update_request(0, 0, 0, 800, 600))
        data = self.transport.value()
        assert len(data) == 4 + 12 + 800 * 600
        assert data[16:] == b"\x07" * (800 * 600)

    def test_full_16bit(self) -> None:
        self.handshake()
        self.proto.dataReceived(set_pixel_format(PixelFormat.for_depth(16)))
        self.proto.dataReceived(update_request(0, 0, 0, 800, 600))
        data = self.transport.value()
        assert len(data) == 4 + 12 + 800 * 600 * 2
        assert data[16:20] == b"\x00\xf8\x00\xf8"

    def test_big_endian_32bit(self) -> None:
        self.handshake()
        self.proto.dataReceived(set_pixel_format(PixelFormat(bigendian=True)))
        self.proto.dataReceived(update_request(0, 0, 0, 1, 1))
        assert self.transport.value()[16:] == b"\x00\xff\x00\x00"

    def test_8bit_true_colour_rgb332(self) -> None:
        self.handshake()
        pf = PixelFormat(8, 8, False, True, 7, 7, 3, 5, 2, 0)
        self.proto.dataReceived(set_pixel_format(pf))
        self.proto.dataReceived(update_request(0, 0, 0, 1, 1))
        assert self.transport.value()[16:] == b"\xe0"

    def test_outside_screen_keeps_connection(self) -> None:
        self.handshake()
        self.proto.dataReceived(update_request(0, 10, 0, 800, 600))
        assert self.transport.value() == b""
        assert not self.transport.disconnecting
        self.screen.getImageBuffer.assert_not_called()

        self.proto.dataReceived(update_request(0, 0, 0, 4, 4))
        assert len(self.transport.value()) == 4 + 12 + 16 * 4

    def test_incremental_only_flags(self) -> None:
        self.handshake()
        self.proto.dataReceived(update_request(1, 0, 0, 800, 600))
        assert self.transport.value() == b""
        assert self.proto.incremental

        self.proto.dataReceived(update_request(0, 0, 0, 800, 600))
        assert not self.proto.incremental

    def test_send_with_pixels(self) -> None:
        self.handshake()
        self.proto.width, self.proto.height = 800, 600
        assert self.proto.sendFramebufferUpdate(1, 1, 2, 1, [0x112233, 0x445566])
        assert self.transport.value()[16:] == b"\x33\x22\x11\x00\x66\x55\x44\x00"

    def test_pixel_count_mismatch(self) -> None:
        self.handshake()
        self.proto.width, self.proto.height = 800, 600
        with self.assertRaises(ValueError):
            self.proto.sendFramebufferUpdate(0, 0, 2, 2, [0] * 3)


class TestPixelFormat(ServerTestCase):

    def test_colour_map(self) -> None:
        self.handshake()
        pf = PixelFormat(8, 8, False, False, 0, 0, 0, 0, 0, 0)
        self.proto.dataReceived(set_pixel_format(pf))
        data = self.transport.value()
        assert data[:6] == b"\x01\x00\x00\x00\x01\x00"
        assert data[6:] == COLORMAP.colourMapEntries()

        self.transport.clear()
        self.proto.dataReceived(update_request(0, 0, 0, 2, 1))
        assert self.transport.value()[16:] == b"\x07\x07"

    def test_24bpp_rejected(self) -> None:
        self.handshake()
        pf = PixelFormat(24, 24, False, True, 255, 255, 255, 16, 8, 0)
        self.proto.dataReceived(set_pixel_format(pf) + update_request(0, 0, 0, 1, 1))
        assert self.transport.disconnecting
        assert self.transport.value() == b""

    def test_wrong_type_byte(self) -> None:
        self.handshake()
        with self.assertRaises(rfb.ProtocolError):
            self.proto._handleSetPixelFormat(b"\x01" + b"\x00" * 19)


class TestDesktopSize(ServerTestCase):

    def test_resize(self) -> None:
        self.handshake()
        self.proto.dataReceived(set_encodings(0, -223))
        self.proto.dataReceived(update_request(1, 0, 0, 800, 600))
        assert self.proto.encodings == {0, -223}

        self.screen.setImage(Image.new("RGB", (1024, 768), "blue"))
        assert self.proto.sendDesktopSize()
        data = self.transport.value()
        assert data[:4] == b"\x00\x00\x00\x02"
        assert data[4:16] == pack("!HHHHi", 0, 0, 1024, 768, 0)
        assert len(data) == 4 + 12 + 1024 * 768 * 4 + 12
        assert data[-12:] == pack("!HHHHi", 0, 0, 1024, 768, -223)
        assert (self.proto.width, self.proto.height) == (1024, 768)
        assert not self.proto.incremental

    def test_single_desktop_size_encoding(self) -> None:
        self.handshake()
        self.proto.dataReceived(b"\x02\x00\x00\x01\xff\xff\xff\x21")
        self.proto.dataReceived(update_request(1, 0, 0, 800, 600))
        assert self.proto.encodings == {rfb.Encoding.PSEUDO_DESKTOP_SIZE}
        assert self.transport.value() == b""

        self.screen.setImage(Image.new("RGB", (640, 480), "blue"))
        assert self.proto.sendDesktopSize()
        data = self.transport.value()
        assert data[:4] == b"\x00\x00\x00\x02"
        assert len(data) == 4 + 12 + 640 * 480 * 4 + 12
        assert data[-12:] == pack("!HHHHi", 0, 0, 640, 480, -223)

    def test_not_announced(self) -> None:
        self.handshake()
        self.proto.dataReceived(set_encodings(0))
        assert not self.proto.sendDesktopSize()
        assert self.transport.value() == b""


class TestClientMessages(ServerTestCase):

    def test_unknown_type(self) -> None:
        self.handshake()
        self.proto.dataReceived(b"\x09" + update_request(0, 0, 0, 1, 1))
        assert self.transport.disconnecting
        assert self.transport.value() == b""
        self.screen.getImageBuffer.assert_not_called()

    def test_ignored_after_close(self) -> None:
        self.handshake()
        self.proto.dataReceived(b"\xff")
        self.proto.dataReceived(pack("!B?xxI", 4, True, 0x61))
        self.screen.keyDown.assert_not_called()

    def test_key_event(self) -> None:
        self.handshake()
        self.proto.dataReceived(pack("!B?xxI", 4, True, 0x61))
        self.proto.dataReceived(pack("!B?xxI", 4, False, rfb.KEY_Return))
        self.screen.keyDown.assert_has_calls(
            [mock.call(0x61, True), mock.call(rfb.KEY_Return, False)]
        )

    def test_pointer_move(self) -> None:
        self.handshake()
        self.proto.dataReceived(pointer_event(0, 10, 20))
        self.screen.mouseMove.assert_called_once_with(10, 20)
        self.screen.mouseButton.assert_not_called()

    def test_pointer_clicks(self) -> None:
        self.handshake()
        for mask, button in ((1, MouseButton.LEFT), (3, MouseButton.MIDDLE), (4, MouseButton.RIGHT)):
            self.screen.reset_mock()
            self.proto.dataReceived(pointer_event(mask, 10, 20))
            assert self.screen.mouseButton.call_args_list == [
                mock.call(button, True, 10, 20),
                mock.call(button, False, 10, 20),
            ]

    def test_pointer_wheel(self) -> None:
        self.handshake()
        self.proto.dataReceived(pointer_event(8, 1, 1))
        self.proto.dataReceived(pointer_event(16, 1, 1))
        assert self.screen.mouseWheel.call_args_list == [
            mock.call(True),
            mock.call(False),
        ]
        self.screen.mouseMove.assert_not_called()

    def test_pointer_other_mask_moves(self) -> None:
        self.handshake()
        self.proto.dataReceived(pointer_event(2, 5, 6))
        self.proto.dataReceived(pointer_event(0x81, 7, 8))
        assert self.screen.mouseMove.call_args_list == [
            mock.call(5, 6),
            mock.call(7, 8),
        ]
        self.screen.mouseButton.assert_not_called()
        self.screen.mouseWheel.assert_not_called()

    def test_cut_text(self) -> None:
        self.handshake()
        self.proto.cutText = mock.Mock()  # type: ignore[assignment]
        self.proto.dataReceived(pack("!BxxxI", 6, 6) + "héllo!".encode("latin-1"))
        self.proto.dataReceived(pack("!B?xxI", 4, True, 0x62))
        self.proto.cutText.assert_called_once_with("héllo!")
        self.screen.keyDown.assert_called_once_with(0x62, True)

    def test_cut_text_too_long(self) -> None:
        self.factory.max_cut_text = 4
        self.handshake()
        self.proto.dataReceived(pack("!BxxxI", 6, 5) + b"hello")
        assert self.transport.disconnecting


class TestSession(ServerTestCase):

    def test_idle_timeout(self) -> None:
        self.factory.timeout = 10
        tr = self.connect()
        self.clock.advance(9)
        self.proto.dataReceived(b"RFB")
        self.clock.advance(9)
        assert not tr.disconnecting
        self.clock.advance(2)
        assert tr.disconnecting

    def test_no_timeout(self) -> None:
        tr = self.connect()
        assert self.clock.getDelayedCalls() == []
        assert not tr.disconnecting

    def test_connection_lost(self) -> None:
        self.factory.timeout = 10
        self.connect()
        self.proto.connectionLost()
        assert self.factory.sessions == set()
        assert self.clock.getDelayedCalls() == []


class TestScreenWatcher(ServerTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.watcher = ScreenWatcher(self.factory, 1.0, clock=self.clock)
        self.watcher.start()
        self.handshake()

    def tearDown(self) -> None:
        self.watcher.stop()

    def test_nothing_requested(self) -> None:
        self.clock.advance(1)
        assert self.transport.value() == b""

    def test_push_on_change(self) -> None:
        self.proto.dataReceived(update_request(1, 0, 0, 800, 600))
        self.clock.advance(1)
        assert len(self.transport.value()) == 4 + 12 + 800 * 600 * 4
        assert not self.proto.incremental

        self.transport.clear()
        self.proto.dataReceived(update_request(1, 0, 0, 800, 600))
        self.clock.advance(1)
        assert self.transport.value() == b""
        assert self.proto.incremental

        self.screen.setImage(Image.new("RGB", (800, 600), "green"))
        self.clock.advance(1)
        data = self.transport.value()
        assert len(data) == 4 + 12 + 800 * 600 * 4
        assert data[16:20] == b"\x00\x80\x00\x00"

    def test_push_requested_region(self) -> None:
        self.proto.dataReceived(update_request(1, 0, 0, 400, 300))
        self.clock.advance(1)
        data = self.transport.value()
        assert data[4:16] == pack("!HHHHi", 0, 0, 400, 300, 0)
        assert len(data) == 4 + 12 + 400 * 300 * 4
        assert not self.proto.incremental

        self.transport.clear()
        self.proto.dataReceived(update_request(1, 0, 0, 400, 300))
        image = Image.new("RGB", (800, 600), "green")
        image.putpixel((2, 1), (0, 0, 255))
        self.screen.setImage(image)
        self.clock.advance(1)
        data = self.transport.value()
        assert len(data) == 4 + 12 + 400 * 300 * 4
        offset = 16 + (1 * 400 + 2) * 4
        assert data[offset : offset + 4] == b"\xff\x00\x00\x00"
        assert data[16:20] == b"\x00\x80\x00\x00"
        assert not self.proto.incremental

    def test_failed_push_keeps_waiting(self) -> None:
        self.proto.dataReceived(update_request(1, 10, 0, 400, 300))
        self.clock.advance(1)
        assert self.transport.value() == b""
        assert self.proto.incremental

        self.proto.dataReceived(update_request(1, 0, 0, 400, 300))
        self.screen.setImage(Image.new("RGB", (800, 600), "green"))
        self.clock.advance(1)
        assert len(self.transport.value()) == 4 + 12 + 400 * 300 * 4
        assert not self.proto.incremental

    def test_resize(self) -> None:
        self.proto.dataReceived(set_encodings(0, -223))
        self.clock.advance(1)
        self.screen.setImage(Image.new("RGB", (320, 200), "blue"))
        self.clock.advance(1)
        data = self.transport.value()
        assert data[:4] == b"\x00\x00\x00\x02"
        assert data[-12:] == pack("!HHHHi", 0, 0, 320, 200, -223)
        assert (self.proto.width, self.proto.height) == (320, 200)

    def test_stop(self) -> None:
        self.watcher.stop()
        self.proto.dataReceived(update_request(1, 0, 0, 800, 600))
        self.clock.advance(5)
        assert self.transport.value() == b""
