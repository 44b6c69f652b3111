import asyncio
import unittest

from spine_scanner                 import Utils
from spine_scanner.core.errors     import RateLimitedError, ServerError
from spine_scanner.core.models     import PreservedPayload, UploadTicket
from spine_scanner.core.rate_limit import RateLimitGovernor

class FakeClock:

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

class ScriptedUploader:
    """
    Answers uploads from a script of exceptions; anything unscripted succeeds.
    """

    def __init__(self, *script):
        self.script    = list(script)
        self.uploaded  = []
        self.attempts  = []
        self.device_id = 'device-1'

    async def upload(self, image, device_id = None):
        self.attempts.append(image)
        if self.script:
            outcome = self.script.pop(0)
            if outcome is not None:
                raise outcome
        self.uploaded.append(image)
        return UploadTicket(job_id = f"job-{len(self.uploaded)}", stream_url = f"http://service/stream/{len(self.uploaded)}")

class TestRateLimitGovernor(unittest.IsolatedAsyncioTestCase):

    def make_governor(self, uploader, **kwargs) -> RateLimitGovernor:
        self.clock      = FakeClock()
        self.resubmits  = []
        self.failures   = []
        return RateLimitGovernor(
            uploader,
            clock              = self.clock,
            on_resubmit        = lambda payload, ticket: self.resubmits.append((payload.data, ticket.job_id)),
            on_resubmit_failed = lambda payload, error: self.failures.append((payload.data, error)),
            **kwargs
        )

    async def test_upload_passes_through_when_clear(self):
        uploader = ScriptedUploader()
        governor = self.make_governor(uploader)

        ticket = await governor.upload(b'img-1')

        self.assertEqual(ticket.job_id, 'job-1')
        self.assertTrue(governor.is_idle)

    async def test_rate_limit_round_trip(self):
        uploader = ScriptedUploader(RateLimitedError(retry_after = 60))
        governor = self.make_governor(uploader)

        with self.assertRaises(RateLimitedError):
            await governor.upload(b'img-1')

        self.assertTrue(governor.is_cooling_down)
        self.assertEqual(governor.resume_at, 1060.0)
        self.assertEqual([p.data for p in governor.preserved_payloads], [b'img-1'])
        self.assertEqual(governor.remaining_seconds(), 60)

        self.clock.advance(59.5)
        self.assertEqual(await governor.tick(), 0)
        self.assertEqual(governor.remaining_seconds(), 1)

        self.clock.advance(0.5)
        self.assertEqual(await governor.tick(), 1)
        self.assertEqual(await governor.tick(), 0)

        self.assertFalse(governor.is_cooling_down)
        self.assertEqual(governor.preserved_payloads, ())
        self.assertEqual(uploader.uploaded, [b'img-1'])
        self.assertEqual(self.resubmits, [(b'img-1', 'job-1')])

    async def test_uploads_during_cooldown_are_preserved_without_network(self):
        uploader = ScriptedUploader(RateLimitedError(retry_after = 30))
        governor = self.make_governor(uploader)

        for image in (b'img-1', b'img-2', b'img-3'):
            with self.assertRaises(RateLimitedError) as raised:
                await governor.upload(image)
            self.clock.advance(5)

        self.assertEqual(uploader.attempts, [b'img-1'])
        self.assertEqual(raised.exception.retry_after, 20)

        self.clock.advance(30)
        self.assertEqual(await governor.tick(), 3)
        self.assertEqual(uploader.uploaded, [b'img-1', b'img-2', b'img-3'])

    async def test_missing_retry_after_uses_the_default(self):
        governor = self.make_governor(ScriptedUploader(RateLimitedError()), default_retry_after = 60)

        with self.assertRaises(RateLimitedError):
            await governor.upload(b'img-1')
        self.assertEqual(governor.resume_at, 1060.0)

    async def test_second_rate_limit_keeps_remaining_payloads_first(self):
        uploader = ScriptedUploader(RateLimitedError(retry_after = 10), None, RateLimitedError(retry_after = 20))
        governor = self.make_governor(uploader)

        for image in (b'img-1', b'img-2', b'img-3'):
            with self.assertRaises(RateLimitedError):
                await governor.upload(image)

        self.clock.advance(10)
        self.assertEqual(await governor.tick(), 1)

        self.assertTrue(governor.is_cooling_down)
        self.assertEqual(governor.resume_at, self.clock.now + 20)
        self.assertEqual([p.data for p in governor.preserved_payloads], [b'img-2', b'img-3'])

        with self.assertRaises(RateLimitedError):
            await governor.upload(b'img-4')
        self.assertEqual([p.data for p in governor.preserved_payloads], [b'img-2', b'img-3', b'img-4'])

        self.clock.advance(20)
        self.assertEqual(await governor.tick(), 3)
        self.assertEqual(uploader.uploaded, [b'img-1', b'img-2', b'img-3', b'img-4'])
        self.assertEqual([job_id for _, job_id in self.resubmits], ['job-1', 'job-2', 'job-3', 'job-4'])

    async def test_other_failures_during_resubmission_are_reported(self):
        uploader = ScriptedUploader(RateLimitedError(retry_after = 1), ServerError(503))
        governor = self.make_governor(uploader)

        for image in (b'img-1', b'img-2'):
            with self.assertRaises(RateLimitedError):
                await governor.upload(image)

        self.clock.advance(1)
        self.assertEqual(await governor.tick(), 1)

        self.assertEqual([data for data, _ in self.failures], [b'img-1'])
        self.assertIsInstance(self.failures[0][1], ServerError)
        self.assertEqual(uploader.uploaded, [b'img-2'])
        self.assertTrue(governor.is_idle)

    async def test_unexpected_resubmission_errors_are_reported(self):
        uploader = ScriptedUploader(RateLimitedError(retry_after = 1), OSError('connection reset'))
        governor = self.make_governor(uploader)

        for image in (b'img-1', b'img-2'):
            with self.assertRaises(RateLimitedError):
                await governor.upload(image)

        self.clock.advance(1)
        self.assertEqual(await governor.tick(), 1)

        self.assertEqual([data for data, _ in self.failures], [b'img-1'])
        self.assertIsInstance(self.failures[0][1], OSError)
        self.assertEqual(uploader.uploaded, [b'img-2'])
        self.assertTrue(governor.is_idle)
        await governor.wait_until_clear(timeout = 1)

    async def test_failing_callback_does_not_stop_resubmission(self):
        uploader = ScriptedUploader(RateLimitedError(retry_after = 1))
        governor = RateLimitGovernor(uploader, clock = FakeClock(), on_resubmit = lambda payload, ticket: 1 / 0)

        for image in (b'img-1', b'img-2'):
            with self.assertRaises(RateLimitedError):
                await governor.upload(image)

        governor.clock.advance(1)
        self.assertEqual(await governor.tick(), 2)
        self.assertEqual(uploader.uploaded, [b'img-1', b'img-2'])
        self.assertTrue(governor.is_idle)

    async def test_interrupted_resubmission_is_picked_up_again(self):
        gate = asyncio.Event()

        class GatedUploader(ScriptedUploader):
            async def upload(self, image, device_id = None):
                if not self.script and not gate.is_set():
                    await gate.wait()
                return await super().upload(image, device_id)

        uploader = GatedUploader(RateLimitedError(retry_after = 1))
        governor = self.make_governor(uploader)

        with self.assertRaises(RateLimitedError):
            await governor.upload(b'img-1')

        self.clock.advance(1)
        draining = asyncio.create_task(governor.tick())
        await asyncio.sleep(0)
        draining.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await draining

        self.assertFalse(governor.is_cooling_down)
        self.assertEqual([p.data for p in governor.preserved_payloads], [b'img-1'])

        gate.set()
        await governor.upload(b'img-2')

        self.assertEqual(uploader.uploaded, [b'img-1', b'img-2'])
        self.assertEqual(self.resubmits, [(b'img-1', 'job-1')])
        self.assertTrue(governor.is_idle)

    async def test_tick_resubmits_payloads_left_without_cooldown(self):
        uploader = ScriptedUploader()
        governor = self.make_governor(uploader)
        governor.preserve(PreservedPayload(data = b'img-1', sequence = 1))

        self.assertEqual(await governor.tick(), 1)
        self.assertEqual(uploader.uploaded, [b'img-1'])
        self.assertTrue(governor.is_idle)

    async def test_new_uploads_wait_for_resubmission(self):
        gate = asyncio.Event()

        class SlowUploader(ScriptedUploader):
            async def upload(self, image, device_id = None):
                if image == b'img-1' and self.uploaded == [] and not self.script:
                    await gate.wait()
                return await super().upload(image, device_id)

        uploader = SlowUploader(RateLimitedError(retry_after = 1))
        governor = self.make_governor(uploader)

        with self.assertRaises(RateLimitedError):
            await governor.upload(b'img-1')

        self.clock.advance(1)
        draining = asyncio.create_task(governor.tick())
        await asyncio.sleep(0)
        newcomer = asyncio.create_task(governor.upload(b'img-2'))
        await asyncio.sleep(0.01)

        self.assertEqual(uploader.uploaded, [])
        gate.set()
        await draining
        await newcomer

        self.assertEqual(uploader.uploaded, [b'img-1', b'img-2'])

    async def test_wait_until_clear_drains_on_its_own(self):
        uploader = ScriptedUploader(RateLimitedError(retry_after = 0))
        governor = RateLimitGovernor(uploader, poll_interval = 0.01)

        with self.assertRaises(RateLimitedError):
            await governor.upload(b'img-1')

        await governor.wait_until_clear(timeout = 1)
        self.assertEqual(uploader.uploaded, [b'img-1'])

    async def test_background_polling(self):
        uploader = ScriptedUploader(RateLimitedError(retry_after = 0))
        governor = RateLimitGovernor(uploader, poll_interval = 0.01)
        governor.start()

        with self.assertRaises(RateLimitedError):
            await governor.upload(b'img-1')
        await asyncio.sleep(0.1)
        await governor.stop()

        self.assertEqual(uploader.uploaded, [b'img-1'])

    async def test_reset_restores_initial_state(self):
        governor = self.make_governor(ScriptedUploader(RateLimitedError(retry_after = 60)))
        with self.assertRaises(RateLimitedError):
            await governor.upload(b'img-1')

        governor.reset()

        self.assertTrue(governor.is_idle)
        self.assertEqual(governor.remaining_seconds(), 0)

    def test_from_config(self):
        uploader = ScriptedUploader()
        governor = RateLimitGovernor.from_config(Utils.load_config(), uploader)

        self.assertEqual(governor.default_retry_after, 60)
        self.assertEqual(governor.poll_interval, 1.0)
        self.assertEqual(governor.device_id, 'device-1')

if __name__ == '__main__':
    unittest.main()
