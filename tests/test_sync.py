import asyncio
import unittest

from qmpsession import (
    Command,
    ErrorResponse,
    ExecuteError,
    ListenerError,
    QMPError,
    SessionState,
)
from qmpsession.sync import QMPBadPortError, SyncSession, parse_address

from .fakes import GREETING, FakeTransport, make_event


def handler(msg):
    if msg['execute'] == 'query-status':
        return {'return': {'status': 'running'}, 'id': msg['id']}
    if msg['execute'] == 'echo':
        return {'return': msg.get('arguments', {}), 'id': msg['id']}
    return {'error': {'class': 'CommandNotFound', 'desc': 'Nope'},
            'id': msg['id']}


class ParseAddress(unittest.TestCase):

    def testINET(self):
        self.assertEqual(parse_address('localhost:4444'),
                         ('localhost', 4444))

    def testUNIX(self):
        self.assertEqual(parse_address('/tmp/qmp.sock'), '/tmp/qmp.sock')
        self.assertEqual(parse_address('qmp.sock'), 'qmp.sock')

    def testUNIXWithColon(self):
        self.assertEqual(parse_address('/run/vm:1/qmp.sock'),
                         '/run/vm:1/qmp.sock')

    def testBadPort(self):
        with self.assertRaises(QMPBadPortError):
            parse_address('localhost:qmp')
        with self.assertRaises(QMPBadPortError):
            parse_address('localhost:')


class SyncBase(unittest.TestCase):

    def setUp(self):
        self.transport = FakeTransport(handler=handler)
        self.qmp = SyncSession(self.transport, name='sync')

    def tearDown(self):
        self.qmp.close()
        # pylint: disable=protected-access
        self.qmp._loop.close()
        asyncio.set_event_loop(None)


class Unconnected(SyncBase):

    def testNoSession(self):
        with self.assertRaises(QMPError):
            self.qmp.session  # pylint: disable=pointless-statement
        with self.assertRaises(QMPError):
            self.qmp.get_event(0)
        self.assertEqual(self.qmp.pending_events(), [])

    def testConnectTwice(self):
        self.qmp.connect()
        with self.assertRaises(QMPError):
            self.qmp.connect()


class Sync(SyncBase):

    def setUp(self):
        super().setUp()
        self.greeting = self.qmp.connect()

    def tearDown(self):
        super().tearDown()
        self.assertEqual(self.qmp.session.state, SessionState.CLOSED)
        self.assertEqual(self.transport.close_count, 1)

    def testGreeting(self):
        # pylint: disable=protected-access
        self.assertEqual(self.greeting._asdict(), GREETING)
        self.assertEqual(self.qmp.session.state, SessionState.READY)

    def testCmd(self):
        self.assertEqual(self.qmp.cmd('query-status'), {'status': 'running'})
        self.assertEqual(self.qmp.cmd('echo', {'value': 1}), {'value': 1})

    def testCmdError(self):
        with self.assertRaises(ExecuteError) as context:
            self.qmp.cmd('frobnicate')
        self.assertEqual(context.exception.error_class, 'CommandNotFound')

    def testExecute(self):
        reply = self.qmp.execute(Command.create('frobnicate', exec_id='mine'))
        self.assertIsInstance(reply, ErrorResponse)
        self.assertEqual(reply.id, 'mine')

        reply = self.qmp.execute({'execute': 'echo', 'arguments': [1]})
        self.assertEqual(reply.value, [1])

    def testTimeout(self):
        self.qmp.timeout = 0.05
        self.transport.handler = None
        with self.assertRaises(asyncio.TimeoutError):
            self.qmp.cmd('query-status')

    def testNoEvents(self):
        self.assertEqual(self.qmp.pending_events(), [])
        with self.assertRaises(asyncio.TimeoutError):
            self.qmp.get_event(0.01)

    def testEvents(self):
        self.transport.feed(make_event('STOP'))
        self.transport.feed(make_event('RESUME'))

        self.assertEqual(self.qmp.get_event(1.0).name, 'STOP')
        self.assertEqual(self.qmp.get_event(1.0).name, 'RESUME')
        self.assertEqual(self.qmp.pending_events(), [])

    def testPendingEvents(self):
        self.transport.feed(make_event('STOP'))
        self.transport.feed(make_event('RESUME'))
        # Replies are routed after every event before them.
        self.qmp.cmd('query-status')

        names = [event.name for event in self.qmp.pending_events()]
        self.assertEqual(names, ['STOP', 'RESUME'])

    def testEventsEndOnClose(self):
        self.qmp.close()
        with self.assertRaises(ListenerError):
            self.qmp.get_event(1.0)

    def testContextManager(self):
        with self.qmp as qmp:
            self.assertIs(qmp, self.qmp)
        self.assertEqual(self.qmp.session.state, SessionState.CLOSED)
