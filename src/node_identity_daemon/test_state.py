"""
Unit Tests for State Code Determination

Validates the mapping from held resources to state codes and the branch
table keyed by those codes.
"""

import unittest

from .resources import Instance, Volume, NetworkInterface, first_match, held_copy
from .state import determine_state_code, STATE_ACTIONS, ReconcilerState


class TestDetermineStateCode(unittest.TestCase):

    def test_all_combinations(self):
        cases = {
            (False, False): 0,
            (True, False): 1,
            (False, True): 2,
            (True, True): 3,
        }
        for (volume, interface), expected in cases.items():
            with self.subTest(volume=volume, interface=interface):
                self.assertEqual(determine_state_code(volume, interface), expected)

    def test_every_code_has_an_action(self):
        for volume in (False, True):
            for interface in (False, True):
                self.assertIn(determine_state_code(volume, interface), STATE_ACTIONS)


class TestReconcilerState(unittest.TestCase):

    def test_state_code_follows_held_resources(self):
        state = ReconcilerState(instance=Instance(id="i-1", region="eu-west-1"))
        self.assertEqual(state.state_code, 0)
        self.assertIsNone(state.last_state_code)
        self.assertEqual(state.volume_attach_tries, 0)

        state.instance.network_interface = NetworkInterface("eni-1", "N1", "i-1", False)
        self.assertEqual(state.state_code, 2)

        state.instance.volume = Volume("vol-1", "N1", "i-1", False)
        self.assertEqual(state.state_code, 3)


class TestResourceHelpers(unittest.TestCase):

    def test_first_match_keeps_provider_order(self):
        volumes = [Volume("vol-a", "N1", None, False), Volume("vol-b", "N1", None, True),
                   Volume("vol-c", "N1", None, True)]
        self.assertEqual(first_match(volumes, lambda v: v.available).id, "vol-b")
        self.assertIsNone(first_match(volumes, lambda v: v.node_id == "N9"))

    def test_held_copy_marks_resource_attached(self):
        original = Volume("vol-a", "N1", None, True)
        held = held_copy(original, "i-1")
        self.assertEqual(held.attached_to, "i-1")
        self.assertFalse(held.available)
        self.assertTrue(original.available)


if __name__ == "__main__":
    unittest.main()
