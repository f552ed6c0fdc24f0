#!/usr/bin/env python
"""
Command line interface to share a screen with VNC viewers

MIT License
"""
import logging
import logging.handlers
import optparse
import os
import sys
from typing import Any, List, Optional, Tuple

from PIL import Image
from twisted.internet import reactor
from twisted.python.log import PythonLoggingObserver

from .server import RFBServerFactory, ScreenWatcher
from .screen import IScreen, ImageScreen

log = logging.getLogger()

DEPTHS = (8, 16, 24, 32)


def log_exceptions(type_: Any, value: Any, tb: Any) -> None:
    log.critical('Unhandled exception:', exc_info=(type_, value, tb))


def parse_size(size: str) -> Tuple[int, int]:
    """WIDTHxHEIGHT"""
    try:
        width, height = (int(v) for v in size.lower().split('x'))
    except ValueError:
        raise ValueError('size must be WIDTHxHEIGHT, got %r' % size) from None
    if width <= 0 or height <= 0 or width > 0xFFFF or height > 0xFFFF:
        raise ValueError('size out of range: %r' % size)
    return width, height


def build_screen(options: optparse.Values) -> IScreen:
    if options.image:
        return ImageScreen(options.image, depth=options.depth)
    if options.headless:
        image = Image.new('RGB', parse_size(options.headless), 'black')
        return ImageScreen(image, depth=options.depth)

    from .desktop import DesktopScreen
    return DesktopScreen(depth=options.depth)


def build_server(options: optparse.Values, screen: IScreen) -> RFBServerFactory:
    factory = RFBServerFactory(screen)
    factory.title = options.title
    factory.timeout = options.timeout or None

    port = reactor.listenTCP(options.listen, factory, interface=options.interface)
    factory.listen_port = port.getHost().port
    log.info('accepting connections on %s:%d', options.interface or '*',
             factory.listen_port)

    if options.poll:
        watcher = ScreenWatcher(factory, options.poll)
        d = watcher.start()
        d.addErrback(lambda failure: log.error('screen watcher stopped: %s',
                                               failure.getErrorMessage()))
        factory.watcher = watcher

    return factory


def add_standard_options(parser: optparse.OptionParser) -> optparse.OptionParser:
    parser.add_option('--logfile', action='store', metavar='FILE',
        help='output logging information to FILE')

    parser.add_option('-v', '--verbose', action='count', default=0,
        help='increase verbosity, use multple times')

    return parser


def setup_logging(options: optparse.Values) -> None:
    # route Twisted log messages via stdlib logging
    if options.logfile:
        handler = logging.handlers.RotatingFileHandler(options.logfile,
                                      maxBytes=5*1024*1024, backupCount=5)
        logging.getLogger().addHandler(handler)
        sys.excepthook = log_exceptions

    logging.basicConfig()
    if options.verbose > 1:
        logging.getLogger().setLevel(logging.DEBUG)
    elif options.verbose:
        logging.getLogger().setLevel(logging.INFO)

    PythonLoggingObserver().start()


def build_parser() -> optparse.OptionParser:
    from vncshare import __version__

    usage = '%prog [options]'
    description = 'Share this screen with VNC viewers'
    version = '%prog ' + __version__

    op = optparse.OptionParser(usage=usage, description=description, version=version)
    add_standard_options(op)

    op.add_option('--listen', metavar='PORT', type='int',
        default=int(os.environ.get('VNCSHARE_PORT', 5902)),
        help='listen for viewer connections on PORT [%default]')

    op.add_option('--interface', metavar='ADDRESS', default='',
        help='only accept connections on ADDRESS [all]')

    op.add_option('--title', metavar='TITLE',
        default=os.environ.get('VNCSHARE_TITLE', RFBServerFactory.title),
        help='desktop name shown by viewers [%default]')

    op.add_option('-t', '--timeout', type='float', metavar='SECONDS',
        help='disconnect viewers idle for SECONDS')

    op.add_option('--poll', type='float', metavar='SECONDS', default=0.5,
        help='check for screen changes every SECONDS, 0 disables [%default]')

    op.add_option('--headless', metavar='WxH',
        help='share a blank screen of size WxH instead of the desktop')

    op.add_option('--image', metavar='FILE',
        help='share the image FILE instead of the desktop')

    op.add_option('--depth', type='choice', choices=[str(d) for d in DEPTHS],
        default='24', help='colour depth announced to viewers [%default]')

    return op


def vncshare(argv: Optional[List[str]] = None) -> None:
    op = build_parser()
    options, args = op.parse_args(argv)
    if args:
        op.error('unexpected arguments %s' % ' '.join(args))
    options.depth = int(options.depth)

    setup_logging(options)

    try:
        screen = build_screen(options)
    except (OSError, ValueError) as e:
        op.error(str(e))

    build_server(options, screen)
    reactor.run()


if __name__ == '__main__':
    vncshare()
