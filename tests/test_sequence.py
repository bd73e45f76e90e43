"""Tests for sequence mode in mt.core.sequence."""

import unittest

from fakes import FailingStore, FakeClock, RecordingStore, make_engine, make_process


class SequenceTestCase(unittest.TestCase):

    def setUp(self):
        from mt.core.notify import Notifier
        from mt.core.sequence import SequenceController
        from mt.core.store import Persister

        self.clock = FakeClock()
        self.engine = make_engine(self.clock)
        self.store = RecordingStore()
        self.persister = Persister(immediate=True)
        self.notifier = Notifier()
        self.saved = []
        self.controller = SequenceController(
            self.engine, self.store, self.persister, self.notifier,
            on_reading_saved=lambda pid, sid: self.saved.append((pid, sid)),
        )

    def tearDown(self):
        self.engine.reset_all()

    def key(self, process, index):
        return (process.id, process.subprocesses[index].id)


# ──────────────────────────────────────────────────────────────────────────
# enable / disable
# ──────────────────────────────────────────────────────────────────────────

class TestToggle(SequenceTestCase):

    def test_enable_starts_at_first_step(self):
        process = make_process("Assembly", ["Pick", "Place"])
        state = self.controller.enable(process)
        self.assertTrue(state.enabled)
        self.assertEqual(state.current_index, 0)
        self.assertEqual(self.controller.state(process), state)
        self.assertTrue(process.sequence_mode)
        self.assertEqual(process.current_sequence_index, 0)
        self.assertEqual(self.store.sequence_states, [("p1", state)])

    def test_enable_stops_running_timers_of_the_process(self):
        process = make_process("Assembly", ["Pick", "Place"])
        self.engine.start(self.key(process, 1))
        self.engine.start(("other", "x"))
        self.controller.enable(process)
        self.assertTrue(self.engine.is_paused(self.key(process, 1)))
        self.assertTrue(self.engine.is_running(("other", "x")))

    def test_enable_without_subprocesses_is_inert(self):
        from mt.core.status import Status
        process = make_process("Empty", [])
        state = self.controller.enable(process)
        self.assertTrue(state.enabled)
        self.assertEqual(state.current_index, -1)
        result = self.controller.advance(process)
        self.assertEqual(result.status, Status.SEQUENCE_NOT_ENABLED)
        self.assertFalse(result)

    def test_enable_always_resets_index(self):
        process = make_process("Assembly", ["Pick", "Place", "Fasten"], sequence_mode=True, current_index=2)
        self.assertEqual(self.controller.state(process).current_index, 2)
        self.controller.enable(process)
        self.assertEqual(self.controller.state(process).current_index, 0)

    def test_disable_stops_timers_and_clears_index(self):
        process = make_process("Assembly", ["Pick", "Place"])
        self.controller.enable(process)
        self.controller.advance(process)
        self.assertTrue(self.engine.is_running(self.key(process, 1)))
        state = self.controller.disable(process)
        self.assertFalse(state.enabled)
        self.assertEqual(state.current_index, -1)
        self.assertFalse(self.engine.is_running(self.key(process, 1)))
        self.assertEqual(self.store.sequence_states[-1], ("p1", state))

    def test_toggle_flips(self):
        process = make_process("Assembly", ["Pick"])
        self.assertTrue(self.controller.toggle(process).enabled)
        self.assertFalse(self.controller.toggle(process).enabled)

    def test_toggle_notifies(self):
        process = make_process("Assembly", ["Pick"])
        self.controller.toggle(process)
        notice = self.notifier.recent[-1]
        self.assertEqual(notice.title, "Sequence Mode")
        self.assertIn("enabled", notice.message)

    def test_advance_when_disabled_fails(self):
        from mt.core.status import Status
        process = make_process("Assembly", ["Pick", "Place"])
        result = self.controller.advance(process)
        self.assertEqual(result.status, Status.SEQUENCE_NOT_ENABLED)
        self.assertEqual(self.engine.keys(), [])
        self.assertEqual(self.store.sequence_states, [])
        self.assertEqual(self.notifier.recent[-1].title, "Sequence Error")


# ──────────────────────────────────────────────────────────────────────────
# stored state healing
# ──────────────────────────────────────────────────────────────────────────

class TestStateLoading(SequenceTestCase):

    def test_out_of_range_index_heals_to_zero(self):
        process = make_process("Assembly", ["Pick", "Place"], sequence_mode=True, current_index=7)
        self.assertEqual(self.controller.state(process).current_index, 0)

    def test_disabled_process_has_no_step(self):
        process = make_process("Assembly", ["Pick", "Place"], sequence_mode=False, current_index=1)
        state = self.controller.state(process)
        self.assertFalse(state.enabled)
        self.assertEqual(state.current_index, -1)

    def test_stale_index_after_subprocess_deleted(self):
        """Index becomes invalid after loading; advance coerces it to 0."""
        process = make_process("Assembly", ["Pick", "Place", "Fasten"], sequence_mode=True, current_index=2)
        self.controller.state(process)
        process.subprocesses.pop()
        result = self.controller.advance(process)
        self.assertEqual(result.current_index, 1)
        self.assertTrue(self.engine.is_running(self.key(process, 1)))

    def test_subprocesses_added_after_inert_enable(self):
        from mt.core.models import Subprocess
        process = make_process("Late", [])
        self.controller.enable(process)
        process.subprocesses.extend([
            Subprocess(id="s0", process_id="p1", name="A", order_index=0),
            Subprocess(id="s1", process_id="p1", name="B", order_index=1),
        ])
        result = self.controller.advance(process)
        self.assertTrue(result)
        self.assertEqual(result.current_index, 1)

    def test_forget_reloads_from_process(self):
        process = make_process("Assembly", ["Pick", "Place"])
        self.controller.enable(process)
        self.controller.forget(process.id)
        process.sequence_mode = False
        self.assertFalse(self.controller.state(process).enabled)


# ──────────────────────────────────────────────────────────────────────────
# advance
# ──────────────────────────────────────────────────────────────────────────

class TestAdvance(SequenceTestCase):

    def test_captures_running_step(self):
        """Step 0 running → exactly one persisted reading, step 1 running, index 1."""
        process = make_process("Assembly", ["Pick", "Place"])
        self.controller.enable(process)
        self.engine.start(self.key(process, 0))
        self.clock.advance(1200)

        result = self.controller.advance(process)

        self.assertTrue(result)
        self.assertEqual(result.current_index, 1)
        self.assertTrue(result.reading.should_persist)
        self.assertEqual(result.reading.elapsed_ms, 1200)
        self.assertFalse(self.engine.is_running(self.key(process, 0)))
        self.assertTrue(self.engine.is_running(self.key(process, 1)))
        self.assertEqual(len(self.store.readings), 1)
        pid, sid, reading, form = self.store.readings[0]
        self.assertEqual((pid, sid), ("p1", "s0"))
        self.assertIs(reading, result.reading)
        self.assertEqual(self.saved, [("p1", "s0")])

    def test_captured_reading_uses_subprocess_properties(self):
        from mt.core.models import ActivityType
        process = make_process("Assembly", ["Pick", "Place"])
        step = process.subprocesses[0]
        step.activity_type = ActivityType.VA
        step.person_count = 3
        step.rating = 110
        self.controller.enable(process)
        self.engine.start(self.key(process, 0))
        self.controller.advance(process)
        form = self.store.readings[0][3]
        self.assertEqual(form.activity_type, ActivityType.VA)
        self.assertEqual(form.person_count, 3)
        self.assertEqual(form.rating, 110)
        self.assertEqual(form.production_qty, 0)
        self.assertEqual(form.remarks, "")

    def test_captured_reading_becomes_last_recorded_time(self):
        process = make_process("Assembly", ["Pick", "Place"])
        self.controller.enable(process)
        self.engine.start(self.key(process, 0))
        self.clock.advance(2340)
        self.controller.advance(process)
        self.assertEqual(self.engine.last_recorded_time(self.key(process, 0)), "00:00:02.34")

    def test_skips_step_that_was_not_running(self):
        process = make_process("Assembly", ["Pick", "Place"])
        self.controller.enable(process)
        result = self.controller.advance(process)
        self.assertIsNone(result.reading)
        self.assertEqual(result.current_index, 1)
        self.assertTrue(self.engine.is_running(self.key(process, 1)))
        self.assertEqual(self.store.readings, [])

    def test_stops_other_running_steps(self):
        process = make_process("Assembly", ["Pick", "Place", "Fasten"])
        self.controller.enable(process)
        self.engine.start(self.key(process, 0))
        self.engine.start(self.key(process, 2))
        self.controller.advance(process)
        running = [k for k in self.engine.keys() if self.engine.is_running(k)]
        self.assertEqual(running, [self.key(process, 1)])
        # Only the current step's time is captured, siblings are just stopped.
        self.assertEqual(len(self.store.readings), 1)

    def test_index_is_persisted(self):
        from mt.core.models import SequenceState
        process = make_process("Assembly", ["Pick", "Place"])
        self.controller.enable(process)
        self.controller.advance(process)
        self.assertEqual(self.store.sequence_states[-1], ("p1", SequenceState(True, 1)))
        self.assertEqual(process.current_sequence_index, 1)

    def test_wraparound_starts_each_step_once(self):
        process = make_process("Assembly", ["Pick", "Place", "Fasten"])
        self.controller.enable(process)
        started = []
        self.engine.started.connect(started.append)
        for _ in range(3):
            self.controller.advance(process)
        self.assertEqual(self.controller.state(process).current_index, 0)
        self.assertEqual(sorted(k.subprocess_id for k in started), ["s0", "s1", "s2"])

    def test_single_step_process_restarts_itself(self):
        process = make_process("Solo", ["Only"])
        self.controller.enable(process)
        self.engine.start(self.key(process, 0))
        self.clock.advance(800)
        result = self.controller.advance(process)
        self.assertEqual(result.current_index, 0)
        self.assertEqual(result.reading.elapsed_ms, 800)
        self.assertTrue(self.engine.is_running(self.key(process, 0)))
        self.assertEqual(self.engine.elapsed_ms(self.key(process, 0)), 0)

    def test_start_failure_still_moves_index(self):
        from mt.core.status import Status
        process = make_process("Assembly", ["Pick", "Place"])
        self.controller.enable(process)
        self.engine.start(self.key(process, 0))
        self.clock.advance(500)
        self.engine.suspend_all()
        result = self.controller.advance(process)
        self.assertEqual(result.status, Status.SUSPENDED)
        self.assertFalse(result)
        self.assertEqual(result.start_status, Status.SUSPENDED)
        self.assertEqual(result.current_index, 1)
        self.assertFalse(self.engine.exists(self.key(process, 1)))
        self.assertEqual(self.notifier.recent[-1].title, "Timer Error")

    def test_next_step_already_running_counts_as_started(self):
        from mt.core.status import Status
        process = make_process("Assembly", ["Pick", "Place"])
        self.controller.enable(process)
        self.engine.start(self.key(process, 1))
        result = self.controller.advance(process)
        self.assertTrue(result)
        self.assertEqual(result.status, Status.OK)
        self.assertEqual(result.start_status, Status.ALREADY_RUNNING)
        self.assertEqual(self.notifier.recent[-1].title, "Next Step")

    def test_store_failure_does_not_roll_back(self):
        from mt.core.sequence import SequenceController
        from mt.core.store import Persister
        persister = Persister(immediate=True)
        failures = []
        persister.failed.connect(lambda what, message: failures.append(what))
        controller = SequenceController(self.engine, FailingStore(), persister)

        process = make_process("Assembly", ["Pick", "Place"])
        controller.enable(process)
        self.engine.start(self.key(process, 0))
        self.clock.advance(1000)
        result = controller.advance(process)

        self.assertEqual(result.current_index, 1)
        self.assertEqual(result.reading.elapsed_ms, 1000)
        self.assertEqual(controller.state(process).current_index, 1)
        self.assertTrue(self.engine.is_running(self.key(process, 1)))
        self.assertEqual(len(failures), 3)  # enable, reading, index

    def test_overlapping_advance_is_rejected(self):
        from mt.core.status import Status
        process = make_process("Assembly", ["Pick", "Place", "Fasten"])
        self.controller.enable(process)
        nested = []
        self.engine.started.connect(lambda key: nested.append(self.controller.advance(process)))
        result = self.controller.advance(process)
        self.assertEqual(result.current_index, 1)
        self.assertEqual([r.status for r in nested], [Status.BUSY])
        self.assertEqual(self.controller.state(process).current_index, 1)


class TestAssemblyScenario(SequenceTestCase):
    """Pick → Place → Fasten, advancing through the whole loop."""

    def test_full_loop(self):
        process = make_process("Assembly", ["Pick", "Place", "Fasten"])
        pick, place, fasten = (self.key(process, i) for i in range(3))

        self.assertEqual(self.controller.enable(process).current_index, 0)

        self.engine.start(pick)
        self.clock.advance(1500)
        first = self.controller.advance(process)
        self.assertTrue(1450 <= first.reading.elapsed_ms <= 1600)
        self.assertEqual(first.current_index, 1)
        self.assertTrue(self.engine.is_running(place))

        self.clock.advance(1000)
        second = self.controller.advance(process)
        self.assertEqual(second.reading.elapsed_ms, 1000)
        self.assertEqual(second.current_index, 2)
        self.assertTrue(self.engine.is_running(fasten))

        third = self.controller.advance(process)
        self.assertEqual(third.current_index, 0)
        self.assertTrue(self.engine.is_running(pick))
        self.assertFalse(self.engine.is_running(fasten))
        # Revisited step measures from zero, not on top of its earlier capture.
        self.assertEqual(self.engine.elapsed_ms(pick), 0)

        self.assertEqual([r[1] for r in self.store.readings], ["s0", "s1", "s2"])


if __name__ == "__main__":
    unittest.main()
