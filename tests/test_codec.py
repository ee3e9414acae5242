import json
from types import MappingProxyType
import unittest

from qmpsession.codec import (
    MalformedFrameError,
    decode,
    decode_stream,
    encode,
    serialize,
)
from qmpsession.transport import TransportError

from .fakes import FakeTransport, TestBase


class Encode(unittest.TestCase):

    def testCompact(self):
        self.assertEqual(
            encode({'execute': 'query-status', 'id': 'a'}),
            b'{"execute":"query-status","id":"a"}\n'
        )

    def testMapping(self):
        frozen = MappingProxyType({'execute': 'stop'})
        self.assertEqual(encode(frozen), b'{"execute":"stop"}\n')

    def testSingleRecord(self):
        data = encode({'arguments': {'text': 'line one\nline two'}})
        self.assertEqual(data.count(b'\n'), 1)
        self.assertTrue(data.endswith(b'\n'))

    def testUnicode(self):
        data = serialize({'desc': 'café'})
        self.assertEqual(json.loads(data), {'desc': 'café'})

    def testNotJSON(self):
        with self.assertRaises(TypeError):
            encode({'arguments': object()})


class Decode(unittest.TestCase):

    def testObject(self):
        self.assertEqual(decode(b'{"return": {}}\n'), {'return': {}})

    def testNonObject(self):
        # Classification, not decoding, rejects these.
        self.assertEqual(decode(b'[1, 2]'), [1, 2])

    def testMalformed(self):
        with self.assertRaises(MalformedFrameError) as context:
            decode(b'{"return": \n')

        err = context.exception
        self.assertEqual(err.raw, b'{"return": \n')
        self.assertIsInstance(err.__cause__, json.JSONDecodeError)
        self.assertIn("raw bytes were", str(err))

    def testBadUTF8(self):
        with self.assertRaises(MalformedFrameError):
            decode(b'{"return": "\xff\xfe"}')


class DecodeStream(TestBase):

    async def _collect(self, transport):
        return [value async for value in decode_stream(transport)]

    @TestBase.async_test
    async def testSequence(self):
        transport = FakeTransport(greeting=None)
        transport.feed({'a': 1})
        transport.feed({'b': 2})
        transport.feed_eof()

        self.assertEqual(await self._collect(transport),
                         [{'a': 1}, {'b': 2}])

    @TestBase.async_test
    async def testEmpty(self):
        transport = FakeTransport(greeting=None)
        transport.feed_eof()
        self.assertEqual(await self._collect(transport), [])

    @TestBase.async_test
    async def testRestartable(self):
        transport = FakeTransport(greeting=None)
        transport.feed({'a': 1})
        transport.feed(b'not json\n')
        transport.feed({'b': 2})
        transport.feed_eof()

        values = []
        with self.assertRaises(MalformedFrameError):
            async for value in decode_stream(transport):
                values.append(value)
        self.assertEqual(values, [{'a': 1}])

        self.assertEqual(await self._collect(transport), [{'b': 2}])

    @TestBase.async_test
    async def testOversizedRecord(self):
        transport = FakeTransport(greeting=None)
        transport.feed_error(ValueError("chunk is longer than limit"))
        transport.feed({'b': 2})
        transport.feed_eof()

        with self.assertRaises(MalformedFrameError) as context:
            await self._collect(transport)
        self.assertIsInstance(context.exception.__cause__, ValueError)

        self.assertEqual(await self._collect(transport), [{'b': 2}])

    @TestBase.async_test
    async def testTransportFailure(self):
        transport = FakeTransport(greeting=None)
        transport.feed_error(ConnectionResetError())

        with self.assertRaises(TransportError) as context:
            await self._collect(transport)
        self.assertIsInstance(context.exception.exc, ConnectionResetError)
