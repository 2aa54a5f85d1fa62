import unittest

import abistamp


class AllowListTests(unittest.TestCase):
    def setUp(self) -> None:
        self.allow = abistamp.AllowList(
            exact=frozenset({"GspSystemInfo", "NV_VGPU_MSG_FUNCTION"}),
            prefixes=("NV_VGPU_MSG_EVENT_", "LIBOS_"),
        )

    def test_exact_names(self) -> None:
        self.assertTrue(self.allow.is_wanted("GspSystemInfo"))
        self.assertTrue(self.allow.is_wanted("NV_VGPU_MSG_FUNCTION"))
        self.assertFalse(self.allow.is_wanted("GspSystemInfoX"))
        self.assertFalse(self.allow.is_wanted("gspsysteminfo"))

    def test_prefix_names(self) -> None:
        self.assertTrue(self.allow.is_wanted("NV_VGPU_MSG_EVENT_OS_ERROR_LOG"))
        self.assertTrue(self.allow.is_wanted("LIBOS_"))
        self.assertFalse(self.allow.is_wanted("NV_VGPU_MSG_EVEN"))

    def test_empty_allow_list_wants_nothing(self) -> None:
        self.assertFalse(abistamp.AllowList().is_wanted("anything"))


class PolicyRegistryTests(unittest.TestCase):
    def test_growable_sets_are_independent(self) -> None:
        policy = abistamp.PolicyRegistry(
            growable_structs=frozenset({"GspStaticConfigInfo"}),
            growable_enums=frozenset({"NV_VGPU_MSG_EVENT"}),
        )
        self.assertTrue(policy.is_growable_struct("GspStaticConfigInfo"))
        self.assertFalse(policy.is_growable_enum("GspStaticConfigInfo"))
        self.assertTrue(policy.is_growable_enum("NV_VGPU_MSG_EVENT"))
        self.assertFalse(policy.is_growable_struct("NV_VGPU_MSG_EVENT"))


if __name__ == "__main__":
    unittest.main()
