import tempfile
import unittest
from pathlib import Path

try:
    import yaml  # noqa: F401
    from realty_agent.realty_core.catalog import (
        CONFIDENCE_EXACT,
        CONFIDENCE_SUBSTRING,
        MATCH_AMBIGUOUS,
        MATCH_EXACT,
        MATCH_NONE,
        CatalogValidationError,
        default_catalog_path,
        load_catalog,
        match_property,
        parse_catalog,
        select_candidate,
    )

    HAS_CATALOG_DEPS = True
except ModuleNotFoundError:
    HAS_CATALOG_DEPS = False


NAMES = ["Bedok Resale Condo", "Tampines New Launch", "Pasir Ris Rise"]


def _property(**overrides):
    payload = {
        "id": "bedok-resale-condo",
        "name": "Bedok Resale Condo",
        "price": "$1.48M",
        "bedrooms": 3,
        "location": "East",
        "tenure": "resale",
    }
    payload.update(overrides)
    return payload


@unittest.skipUnless(HAS_CATALOG_DEPS, "catalog dependencies are not installed")
class CatalogTests(unittest.TestCase):
    def test_load_default_catalog_success(self) -> None:
        catalog = load_catalog()
        self.assertEqual(catalog.names(), NAMES)
        self.assertEqual(catalog.properties[0].price, "$1.48M")

    def test_default_catalog_file_exists(self) -> None:
        self.assertTrue(default_catalog_path().exists())

    def test_listing_line(self) -> None:
        catalog = parse_catalog({"properties": [_property()]}, Path("memory://catalog.yaml"))
        self.assertEqual(catalog.properties[0].listing_line(), "Bedok Resale Condo, $1.48M, 3BR, East (resale)")

    def test_parse_catalog_rejects_duplicate_names(self) -> None:
        raw_catalog = {
            "properties": [
                _property(),
                _property(id="bedok-two", name="bedok resale condo"),
            ]
        }
        with self.assertRaises(CatalogValidationError) as exc:
            parse_catalog(raw_catalog, Path("memory://catalog.yaml"))
        self.assertIn("duplicate property ids or names", str(exc.exception))

    def test_parse_catalog_rejects_unknown_tenure_and_extra_fields(self) -> None:
        with self.assertRaises(CatalogValidationError) as exc:
            parse_catalog({"properties": [_property(tenure="freehold")]}, Path("memory://catalog.yaml"))
        self.assertIn("properties.0.tenure", str(exc.exception))

        with self.assertRaises(CatalogValidationError):
            parse_catalog({"properties": [_property(floor=12)]}, Path("memory://catalog.yaml"))

    def test_load_catalog_requires_mapping(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "catalog.yaml"
            path.write_text("- just\n- a list\n", encoding="utf-8")
            with self.assertRaises(CatalogValidationError):
                load_catalog(path)

    def test_load_catalog_missing_file(self) -> None:
        with self.assertRaises(FileNotFoundError):
            load_catalog(Path("definitely_missing_catalog.yaml"))


@unittest.skipUnless(HAS_CATALOG_DEPS, "catalog dependencies are not installed")
class MatchPropertyTests(unittest.TestCase):
    def test_case_insensitive_exact_match(self) -> None:
        result = match_property("bedok resale CONDO", NAMES)
        self.assertEqual(result.kind, MATCH_EXACT)
        self.assertEqual(result.value, "Bedok Resale Condo")
        self.assertEqual(result.confidence, CONFIDENCE_EXACT)

    def test_partial_name_single_hit(self) -> None:
        result = match_property("Bedok", NAMES)
        self.assertEqual(result.kind, MATCH_EXACT)
        self.assertEqual(result.value, "Bedok Resale Condo")
        self.assertEqual(result.confidence, CONFIDENCE_SUBSTRING)

    def test_sentence_containing_name(self) -> None:
        result = match_property("I like the Pasir Ris Rise one", NAMES)
        self.assertEqual(result.value, "Pasir Ris Rise")

    def test_ambiguous_partial_name(self) -> None:
        result = match_property("bedok", ["Bedok Resale Condo", "Bedok Court"])
        self.assertEqual(result.kind, MATCH_AMBIGUOUS)
        self.assertIsNone(result.value)
        self.assertEqual(result.candidates, ["Bedok Resale Condo", "Bedok Court"])

    def test_no_match(self) -> None:
        self.assertEqual(match_property("Punggol", NAMES).kind, MATCH_NONE)
        self.assertEqual(match_property("b", NAMES).kind, MATCH_NONE)
        self.assertEqual(match_property("", NAMES).kind, MATCH_NONE)

    def test_select_candidate_by_number_or_name(self) -> None:
        candidates = ["Bedok Resale Condo", "Bedok Court"]
        self.assertEqual(select_candidate("2", candidates), "Bedok Court")
        self.assertEqual(select_candidate("#1", candidates), "Bedok Resale Condo")
        self.assertEqual(select_candidate("2.", candidates), "Bedok Court")
        self.assertEqual(select_candidate("court", candidates), "Bedok Court")
        self.assertIsNone(select_candidate("9", candidates))
        self.assertIsNone(select_candidate("bedok", candidates))


if __name__ == "__main__":
    unittest.main()
