import asyncio
import json
import os
import socket
from tempfile import TemporaryDirectory

from qmpsession import (
    Command,
    ConnectionClosedError,
    MalformedFrameError,
    SessionState,
    TransportError,
    connect,
    open_session,
)
from qmpsession.transport import StreamTransport, open_connection

from .fakes import GREETING, TestBase, make_event


class FakeQEMU:
    """
    A minimal QMP server speaking over real asyncio streams.

    It greets, accepts ``qmp_capabilities``, and answers every other
    command with an event followed by its reply.
    """
    def __init__(self, noise: bytes = b''):
        self.received = []
        self.done = asyncio.Event()
        # Written ahead of every command reply.
        self.noise = noise

    async def serve(self, reader, writer):
        try:
            writer.write(json.dumps(GREETING).encode() + b'\n')
            await writer.drain()

            while True:
                line = await reader.readline()
                if not line:
                    break
                msg = json.loads(line)
                self.received.append(msg)

                if msg['execute'] == 'qmp_capabilities':
                    writer.write(b'{"return": {}}\n')
                else:
                    writer.write(self.noise)
                    event = make_event('COMMAND', {'name': msg['execute']})
                    writer.write(json.dumps(event).encode() + b'\n')
                    reply = {'return': {'echo': msg.get('arguments')},
                             'id': msg['id']}
                    writer.write(json.dumps(reply).encode() + b'\n')
                await writer.drain()
        finally:
            writer.close()
            self.done.set()


class Streams(TestBase):

    @TestBase.async_test
    async def testUnixSocket(self):
        server = FakeQEMU()

        with TemporaryDirectory(prefix='qmpsession-') as tmpdir:
            path = os.path.join(tmpdir, 'qmp.sock')
            listener = await asyncio.start_unix_server(server.serve, path)
            try:
                session = await open_session(path, name='unix')
                events = session.events('COMMAND')

                result = await session.cmd('human-monitor-command',
                                           {'command-line': 'info status'})
                self.assertEqual(result,
                                 {'echo': {'command-line': 'info status'}})

                event = await events.get()
                self.assertEqual(event.data, {'name': 'human-monitor-command'})

                await session.close()
                self.assertEqual(session.state, SessionState.CLOSED)
                self.assertIsNone(session.error)

                await asyncio.wait_for(server.done.wait(), 5)
            finally:
                listener.close()
                await listener.wait_closed()

        self.assertEqual(
            [msg['execute'] for msg in server.received],
            ['qmp_capabilities', 'human-monitor-command'],
        )

    @TestBase.async_test
    async def testSocketPair(self):
        server = FakeQEMU()
        ours, theirs = socket.socketpair()

        reader, writer = await asyncio.open_connection(sock=theirs)
        serve = asyncio.create_task(server.serve(reader, writer))

        transport = await open_connection(ours)
        self.assertIsInstance(transport, StreamTransport)

        session = await connect(transport)
        response = await session.execute(Command.create('stop'))
        self.assertEqual(response.value, {'echo': None})

        await session.close()
        await asyncio.wait_for(serve, 5)

    @TestBase.async_test
    async def testHangup(self):
        ours, theirs = socket.socketpair()
        transport = await open_connection(ours)

        theirs.sendall(json.dumps(GREETING).encode() + b'\n')
        theirs.close()

        # Either the hangup, or the failure to write into it.
        with self.assertRaises((ConnectionClosedError, TransportError)):
            await connect(transport)

    async def _bad_connection_test(self, address):
        with self.assertRaises(TransportError) as context:
            await open_connection(address)

        self.assertIsInstance(context.exception.exc, OSError)
        self.assertEqual(
            context.exception.error_message,
            "Failed to establish connection"
        )

    @TestBase.async_test
    async def testBadINET(self):
        """
        Test an immediately rejected call to an IP target.
        """
        await self._bad_connection_test(('127.0.0.1', 0))

    @TestBase.async_test
    async def testBadUNIX(self):
        """
        Test an immediately rejected call to a UNIX socket target.
        """
        await self._bad_connection_test('/dev/null')

    async def _oversized_test(self, strict):
        big = make_event('BIG', {'blob': 'x' * 8192})
        server = FakeQEMU(noise=json.dumps(big).encode() + b'\n')

        with TemporaryDirectory(prefix='qmpsession-') as tmpdir:
            path = os.path.join(tmpdir, 'qmp.sock')
            listener = await asyncio.start_unix_server(server.serve, path)
            try:
                session = await open_session(path, strict=strict, limit=1024)
                try:
                    events = session.events()
                    result = await session.cmd('stop')
                    return session, result, events
                finally:
                    await session.close()
            finally:
                listener.close()
                await listener.wait_closed()

    @TestBase.async_test
    async def testOversizedRecordLenient(self):
        session, result, events = await self._oversized_test(strict=False)

        self.assertEqual(result, {'echo': None})
        self.assertIsNone(session.error)
        names = [event.name async for event in events]
        self.assertEqual(names, ['COMMAND'])

    @TestBase.async_test
    async def testOversizedRecordStrict(self):
        with self.assertRaises(ConnectionClosedError) as context:
            await self._oversized_test(strict=True)
        self.assertIsInstance(context.exception.exc, MalformedFrameError)
