from dataclasses import replace
from datetime import datetime
import unittest

from dosetrack import (
    DoseStateMachine,
    InMemoryScheduleStore,
    NotFound,
    TERMINAL_STATES,
    can_transition,
)
from shared.contracts.enums import DoseState


class RacingStore(InMemoryScheduleStore):
    """Another caller skips the dose between the state machine's read and write."""

    def update_dose_state(self, dose_id, new_state, taken_at=None, expected_state=None):
        super().update_dose_state(dose_id, DoseState.SKIPPED, expected_state=DoseState.PENDING)
        return super().update_dose_state(dose_id, new_state, taken_at=taken_at, expected_state=expected_state)


class DoseStateMachineTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryScheduleStore()
        medication = self.store.create_medication(name="Omeprazol")
        slot = self.store.create_time_slot(medication.id, "08:00")
        self.dose_id = self.store.create_dose(medication.id, slot.id, datetime(2026, 1, 1, 8, 0))
        self.machine = DoseStateMachine(self.store)
        self.at = datetime(2026, 1, 1, 8, 4)

    def test_mark_taken_sets_taken_at(self) -> None:
        dose = self.machine.mark_taken(self.dose_id, self.at)
        self.assertEqual(DoseState.TAKEN, dose.state)
        self.assertEqual(self.at, dose.taken_at)

    def test_mark_skipped_leaves_taken_at_empty(self) -> None:
        dose = self.machine.mark_skipped(self.dose_id)
        self.assertEqual(DoseState.SKIPPED, dose.state)
        self.assertIsNone(dose.taken_at)

    def test_double_tap_is_a_no_op(self) -> None:
        first = self.machine.mark_taken(self.dose_id, self.at)
        second = self.machine.mark_taken(self.dose_id, datetime(2026, 1, 1, 8, 5))
        self.assertEqual(first, second)

    def test_unknown_dose_raises(self) -> None:
        with self.assertRaises(NotFound):
            self.machine.mark_taken(42, self.at)
        with self.assertRaises(NotFound):
            self.machine.mark_skipped(42)

    def test_duplicate_dose_key_is_rejected(self) -> None:
        dose = self.store.get_dose_by_id(self.dose_id)
        with self.assertRaises(ValueError):
            self.store.create_dose(dose.medication_id, dose.time_slot_id, datetime(2026, 1, 1, 20, 0))

    def test_dose_outside_the_transition_table_is_left_alone(self) -> None:
        dose = self.store.get_dose_by_id(self.dose_id)
        self.store.doses[self.dose_id] = replace(dose, state=DoseState.POSTPONED)

        taken = self.machine.mark_taken(self.dose_id, self.at)
        skipped = self.machine.mark_skipped(self.dose_id)

        self.assertEqual(DoseState.POSTPONED, taken.state)
        self.assertIsNone(taken.taken_at)
        self.assertEqual(DoseState.POSTPONED, skipped.state)

    def test_concurrent_skip_wins_over_late_taken(self) -> None:
        store = RacingStore()
        medication = store.create_medication(name="Omeprazol")
        slot = store.create_time_slot(medication.id, "08:00")
        dose_id = store.create_dose(medication.id, slot.id, datetime(2026, 1, 1, 8, 0))

        dose = DoseStateMachine(store).mark_taken(dose_id, self.at)

        self.assertEqual(DoseState.SKIPPED, dose.state)
        self.assertIsNone(dose.taken_at)


class TransitionTableTests(unittest.TestCase):
    def test_only_pending_can_move(self) -> None:
        self.assertTrue(can_transition(DoseState.PENDING, DoseState.TAKEN))
        self.assertTrue(can_transition(DoseState.PENDING, DoseState.SKIPPED))
        self.assertFalse(can_transition(DoseState.PENDING, DoseState.POSTPONED))
        for terminal in TERMINAL_STATES:
            for target in DoseState:
                self.assertFalse(can_transition(terminal, target))


if __name__ == "__main__":
    unittest.main()
