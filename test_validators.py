import logging
import unittest

from skillhost.runtime.validators import (
    AllowListValidator,
    AnyValidator,
    BooleanValidator,
    MappedValidator,
    OptionalValidator,
    build_validator,
)

logging.basicConfig(level=logging.CRITICAL)


class TestBooleanValidator(unittest.TestCase):

    def test_strict_accepts_known_words(self):
        v = BooleanValidator()
        self.assertEqual(v("yes").value, True)
        self.assertEqual(v("  YES ").value, True)
        self.assertEqual(v("nope").value, False)

    def test_strict_rejects_near_misses(self):
        v = BooleanValidator()
        for raw in ("yess", "yes please", "maybe", "", None):
            self.assertFalse(v(raw).accepted, raw)

    def test_fuzzy_tolerates_punctuation_extra_words_and_typos(self):
        v = BooleanValidator(fuzzy=True)
        cases = {
            "Yes!": True,
            "yes please": True,
            "yess": True,
            "Sure, go ahead": True,
            "noo": False,
            "No.": False,
            "nah thanks": False,
        }
        for raw, expected in cases.items():
            verdict = v(raw)
            self.assertTrue(verdict.accepted, raw)
            self.assertIs(verdict.value, expected, raw)

    def test_fuzzy_still_rejects_unrelated_input(self):
        v = BooleanValidator(fuzzy=True)
        self.assertFalse(v("the weather in Oslo").accepted)
        self.assertFalse(v("").accepted)


class TestOtherValidators(unittest.TestCase):

    def test_any_accepts_everything_as_text(self):
        v = AnyValidator()
        self.assertEqual(v("hello").value, "hello")
        self.assertEqual(v(None).value, "")

    def test_mapped_normalises_keys(self):
        v = MappedValidator(mapping={"Red": 1, "dark  green": 2})
        self.assertEqual(v("red").value, 1)
        self.assertEqual(v(" Dark green ").value, 2)
        self.assertFalse(v("blue").accepted)

    def test_allow_list_returns_canonical_spelling(self):
        v = AllowListValidator(allowed=("Oslo", "Bergen"))
        self.assertEqual(v("oslo").value, "Oslo")
        self.assertFalse(v("Paris").accepted)
        self.assertFalse(v("").accepted)

    def test_empty_allow_list_accepts_any_non_empty_input(self):
        v = AllowListValidator()
        self.assertEqual(v(" Paris ").value, "Paris")
        self.assertFalse(v("   ").accepted)

    def test_optional_wrapper(self):
        v = OptionalValidator(inner=BooleanValidator())
        self.assertTrue(v("").accepted)
        self.assertIsNone(v("").value)
        self.assertIs(v("yes").value, True)
        self.assertFalse(v("perhaps").accepted)


class TestBuildValidator(unittest.TestCase):

    def test_from_declarative_specs(self):
        self.assertIsInstance(build_validator(None), AnyValidator)
        self.assertIsInstance(build_validator("boolean"), BooleanValidator)
        fuzzy = build_validator({"kind": "boolean", "fuzzy": True})
        self.assertTrue(fuzzy.fuzzy)
        nested = build_validator({"kind": "optional", "inner": {"kind": "mapped", "mapping": {"red": 1}}})
        self.assertEqual(nested("RED").value, 1)
        self.assertIsNone(nested("").value)

    def test_to_spec_round_trips(self):
        v = OptionalValidator(inner=AllowListValidator(allowed=("a", "b")))
        rebuilt = build_validator(v.to_spec())
        self.assertEqual(rebuilt, v)

    def test_unknown_kind(self):
        with self.assertRaises(ValueError):
            build_validator({"kind": "regex"})
        with self.assertRaises(TypeError):
            build_validator(42)


if __name__ == "__main__":
    unittest.main()
