import unittest

from qmpsession.codec import decode, encode
from qmpsession.models import (
    Command,
    ErrorResponse,
    Event,
    Greeting,
    SuccessResponse,
    UnrecognizedMessageError,
    classify,
)

from .fakes import GREETING, make_event


class Classify(unittest.TestCase):

    def testGreeting(self):
        greeting = classify(GREETING)
        self.assertIsInstance(greeting, Greeting)
        self.assertEqual(greeting.capabilities, ('oob',))
        self.assertEqual(greeting.version.qemu.major, 9)
        self.assertEqual(greeting.version.qemu.minor, 2)
        self.assertEqual(greeting.version.qemu.micro, 0)
        self.assertEqual(str(greeting.version.qemu), '9.2.0')
        self.assertEqual(greeting.version.package, 'v9.2.0')

    def testEvent(self):
        event = classify(make_event('STOP', {'reason': 'x'}, 5, 10))
        self.assertIsInstance(event, Event)
        self.assertEqual(event.name, 'STOP')
        self.assertEqual(event.data, {'reason': 'x'})
        self.assertEqual(event.timestamp.seconds, 5)
        self.assertEqual(event.timestamp.microseconds, 10)
        self.assertAlmostEqual(event.timestamp.time, 5.00001)

    def testEventWithoutData(self):
        event = classify(make_event('RESUME'))
        self.assertIsNone(event.data)

    def testUnknownTime(self):
        event = classify(make_event('STOP', seconds=-1, microseconds=-1))
        self.assertIsNone(event.timestamp.time)

    def testSuccess(self):
        response = classify({'return': [1, 2], 'id': 7})
        self.assertIsInstance(response, SuccessResponse)
        self.assertEqual(response.value, [1, 2])
        self.assertEqual(response.id, 7)

    def testSuccessWithoutID(self):
        response = classify({'return': {}})
        self.assertIsInstance(response, SuccessResponse)
        self.assertIsNone(response.id)

    def testError(self):
        response = classify({
            'error': {'class': 'GenericError', 'desc': 'nope'},
            'id': 'x',
        })
        self.assertIsInstance(response, ErrorResponse)
        self.assertEqual(response.error.class_, 'GenericError')
        self.assertEqual(response.error.desc, 'nope')
        self.assertEqual(response.id, 'x')

    def testOrder(self):
        # 'error' is checked before 'return'.
        response = classify({
            'return': {},
            'error': {'class': 'GenericError', 'desc': 'nope'},
        })
        self.assertIsInstance(response, ErrorResponse)

    def testNoMembers(self):
        with self.assertRaises(UnrecognizedMessageError) as context:
            classify({'foo': 'bar'})
        self.assertEqual(context.exception.value, {'foo': 'bar'})
        self.assertIn("json value was", str(context.exception))

    def testNotObject(self):
        for value in ([], 'QMP', 42, None):
            with self.subTest(value=value):
                with self.assertRaises(UnrecognizedMessageError):
                    classify(value)

    def testMalformed(self):
        cases = (
            {'QMP': {'version': {}, 'capabilities': []}},
            {'QMP': {'version': GREETING['QMP']['version'],
                     'capabilities': 'oob'}},
            {'QMP': {'version': GREETING['QMP']['version'],
                     'capabilities': [1]}},
            {'event': 'STOP'},
            {'event': 'STOP', 'timestamp': {'seconds': True,
                                            'microseconds': 0}},
            {'error': 'oops'},
            {'error': {'class': 'GenericError'}},
        )
        for value in cases:
            with self.subTest(value=value):
                with self.assertRaises(UnrecognizedMessageError) as context:
                    classify(value)
                self.assertEqual(context.exception.value, value)


class RoundTrip(unittest.TestCase):

    def testServerMessages(self):
        values = (
            GREETING,
            make_event('SHUTDOWN', {'guest': True}),
            {'error': {'class': 'CommandNotFound', 'desc': 'x'}, 'id': 3},
            {'return': {'status': 'running'}, 'id': '__qmp#00001'},
        )
        for value in values:
            with self.subTest(value=value):
                model = classify(value)
                again = classify(decode(encode(model.message)))
                self.assertEqual(model, again)

    def testMessage(self):
        model = classify({'return': {}, 'id': 1})
        msg = model.message
        self.assertEqual(msg, {'return': {}, 'id': 1})
        msg['id'] = 2
        # The model's own content is unaffected.
        self.assertEqual(model.id, 1)

    def testInequality(self):
        self.assertNotEqual(classify({'return': {}}),
                            classify({'return': {}, 'id': 1}))
        self.assertNotEqual(classify({'return': {}}), {'return': {}})


class Commands(unittest.TestCase):

    def testCreate(self):
        cmd = Command.create('query-status')
        self.assertEqual(cmd.name, 'query-status')
        self.assertFalse(cmd.oob)
        self.assertIsNone(cmd.arguments)
        self.assertIsNone(cmd.id)
        self.assertEqual(dict(cmd.message), {'execute': 'query-status'})

    def testCreateFull(self):
        cmd = Command.create('migrate-pause', {'a': 1}, exec_id=5, oob=True)
        self.assertTrue(cmd.oob)
        self.assertEqual(dict(cmd.message), {
            'exec-oob': 'migrate-pause',
            'arguments': {'a': 1},
            'id': 5,
        })

    def testMalformed(self):
        with self.assertRaises(KeyError):
            Command({'arguments': {}})
        with self.assertRaises(TypeError):
            Command({'execute': 'x', 'exec-oob': 'y'})

    def testArgumentsAnyValue(self):
        for arguments in ([1, 2], 'text', 7, {}):
            with self.subTest(arguments=arguments):
                cmd = Command({'execute': 'x', 'arguments': arguments})
                self.assertEqual(cmd.arguments, arguments)
