import asyncio
import os
import sys
import unittest
from typing import Dict, List, Optional, Sequence
from unittest.mock import patch

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from zotero_analysis_mcp.analysis import (
    DEFAULT_CONCURRENCY,
    NoteAnalyzer,
    load_concurrency_from_env,
    load_selection_from_env,
)
from zotero_analysis_mcp.models import Item, Note
from zotero_analysis_mcp.notes import NoteSelection
from zotero_analysis_mcp.zotero_client import ZoteroError


def analysis_note(key: str, parent: str, **sections: str) -> Note:
    body = "<h2>Elicit Analysis</h2>" + "".join(
        f"<h3>{label}</h3><p>{value}</p>" for label, value in sections.items()
    )
    return Note(key=key, parent_key=parent, content=body)


def plain_note(key: str, parent: str, text: str = "reading notes") -> Note:
    return Note(key=key, parent_key=parent, content=f"<p>{text}</p>")


class FakeProvider:
    def __init__(
        self,
        items: List[Item],
        notes: Dict[str, List[Note]],
        failing: Sequence[str] = (),
        delays: Optional[Dict[str, float]] = None,
    ) -> None:
        self.items = items
        self.notes = notes
        self.failing = set(failing)
        self.delays = delays or {}
        self.note_requests: List[str] = []

    async def fetch_items(self, collection_key: str) -> List[Item]:
        return list(self.items)

    async def fetch_child_notes(self, item_key: str) -> List[Note]:
        self.note_requests.append(item_key)
        if item_key in self.delays:
            await asyncio.sleep(self.delays[item_key])
        if item_key in self.failing:
            raise ZoteroError("ZOTERO_UPSTREAM_ERROR", "Zotero service error.", {"status": 500, "item_key": item_key})
        return list(self.notes.get(item_key, []))


def _item(key: str, title: str = "") -> Item:
    return Item(
        key=key,
        title=title or f"Paper {key}",
        creators=({"creator_type": "author", "last_name": "Doe", "first_name": "Jane"},),
    )


class CompareTests(unittest.IsolatedAsyncioTestCase):
    async def test_groups_by_study_design(self) -> None:
        provider = FakeProvider(
            [_item("A1"), _item("A2")],
            {
                "A1": [analysis_note("N1", "A1", **{"Study Design": "Randomized Controlled Trial"})],
                "A2": [plain_note("N2", "A2")],
            },
        )
        result = await NoteAnalyzer(provider).compare("COLL", "study_design")

        self.assertEqual(result["field"], "Study Design")
        self.assertEqual(result["unique_approaches"], 1)
        self.assertEqual(result["total_papers"], 1)
        self.assertEqual(list(result["groups"]), ["Randomized Controlled Trial"])
        self.assertEqual(result["groups"]["Randomized Controlled Trial"][0]["key"], "A1")

    async def test_missing_values_use_placeholders(self) -> None:
        provider = FakeProvider(
            [_item("A1"), _item("A2")],
            {
                "A1": [analysis_note("N1", "A1", Summary="Baseline description only")],
                "A2": [analysis_note("N2", "A2", Intervention="Cash transfer")],
            },
        )
        analyzer = NoteAnalyzer(provider)

        designs = await analyzer.compare("COLL", "study_design")
        self.assertEqual(set(designs["groups"]), {"Not specified"})
        self.assertEqual(len(designs["groups"]["Not specified"]), 2)

        interventions = await analyzer.compare("COLL", "interventions")
        self.assertEqual(set(interventions["groups"]), {"No intervention", "Cash transfer"})

    async def test_limit_caps_grouped_papers(self) -> None:
        items = [_item(f"A{i}") for i in range(5)]
        notes = {item.key: [analysis_note("N" + item.key, item.key, **{"Study Design": "Cohort"})] for item in items}
        result = await NoteAnalyzer(FakeProvider(items, notes)).compare("COLL", "study_design", limit=3)

        self.assertEqual(result["total_papers"], 3)
        self.assertEqual([ref["key"] for ref in result["groups"]["Cohort"]], ["A0", "A1", "A2"])

    async def test_unknown_focus_area_rejected(self) -> None:
        with self.assertRaises(ValueError):
            await NoteAnalyzer(FakeProvider([], {})).compare("COLL", "sample_size")


class SearchTests(unittest.IsolatedAsyncioTestCase):
    async def test_item_without_notes_is_skipped(self) -> None:
        provider = FakeProvider([_item("A1")], {"A1": []})
        result = await NoteAnalyzer(provider).search("COLL", "anything")

        self.assertEqual(result["total_matches"], 0)
        self.assertEqual(result["results"], [])
        self.assertEqual(result["search_field"], "all")

    async def test_snippet_window_is_clamped(self) -> None:
        findings = "x" * 450 + "climate" + "y" * 43
        note = Note(key="N1", parent_key="A1", content=f"Elicit Analysis <h3>Main Findings</h3><p>{findings}</p>")
        provider = FakeProvider([_item("A1")], {"A1": [note]})

        result = await NoteAnalyzer(provider).search("COLL", "CLIMATE", field="findings")

        self.assertEqual(result["total_matches"], 1)
        match = result["results"][0]
        self.assertEqual(match["context"], findings[350:500])
        self.assertEqual(match["matched_field"], "Main Findings")
        self.assertEqual(match["note_key"], "N1")
        self.assertEqual(result["search_field"], "findings")

    async def test_snippet_over_whole_note(self) -> None:
        text = "Elicit Analysis " + "x" * 434 + "climate" + "y" * 43
        self.assertEqual(len(text), 500)
        provider = FakeProvider([_item("A1")], {"A1": [Note(key="N1", parent_key="A1", content=f"<p>{text}</p>")]})

        result = await NoteAnalyzer(provider).search("COLL", "climate", field="all")

        self.assertEqual(result["results"][0]["context"], text[350:500])
        self.assertEqual(result["results"][0]["matched_field"], "all")

    async def test_field_scope_ignores_other_sections(self) -> None:
        provider = FakeProvider(
            [_item("A1")],
            {"A1": [analysis_note("N1", "A1", Summary="Heat exposure in cities", Region="Europe")]},
        )
        analyzer = NoteAnalyzer(provider)

        scoped = await analyzer.search("COLL", "heat", field="region")
        self.assertEqual(scoped["total_matches"], 0)

        unscoped = await analyzer.search("COLL", "heat")
        self.assertEqual(unscoped["total_matches"], 1)
        self.assertEqual(unscoped["results"][0]["matched_field"], "all")

    async def test_filters_apply_to_raw_note(self) -> None:
        items = [_item("A1"), _item("A2"), _item("A3")]
        notes = {
            "A1": [analysis_note("N1", "A1", Summary="Air quality study", Intervention="Low emission zone", **{"Study Design": "RCT"})],
            "A2": [analysis_note("N2", "A2", Summary="Air quality study", Intervention="No intervention", **{"Study Design": "Cohort"})],
            "A3": [analysis_note("N3", "A3", Summary="Air quality study", **{"Study Design": "RCT"})],
        }
        analyzer = NoteAnalyzer(FakeProvider(items, notes))

        with_intervention = await analyzer.search("COLL", "air quality", has_intervention=True)
        self.assertEqual([r["key"] for r in with_intervention["results"]], ["A1"])

        without = await analyzer.search("COLL", "air quality", has_intervention=False)
        self.assertEqual([r["key"] for r in without["results"]], ["A2", "A3"])

        rct = await analyzer.search("COLL", "air quality", study_design="rct")
        self.assertEqual([r["key"] for r in rct["results"]], ["A1", "A3"])
        self.assertEqual(rct["filters"], {"study_design": "rct", "has_intervention": None})

    async def test_limit_stops_further_lookups(self) -> None:
        items = [_item(f"A{i}") for i in range(6)]
        notes = {item.key: [analysis_note("N" + item.key, item.key, Summary="Shared topic")] for item in items}
        provider = FakeProvider(items, notes)

        result = await NoteAnalyzer(provider, concurrency=2).search("COLL", "shared", limit=1)

        self.assertEqual(result["total_matches"], 1)
        self.assertEqual(result["results"][0]["key"], "A0")
        self.assertEqual(sorted(provider.note_requests), ["A0", "A1"])

    async def test_results_follow_collection_order(self) -> None:
        items = [_item(f"A{i}") for i in range(10)]
        notes = {item.key: [analysis_note("N" + item.key, item.key, Summary="Shared topic")] for item in items}
        result = await NoteAnalyzer(FakeProvider(items, notes), concurrency=3).search("COLL", "topic", limit=10)

        self.assertEqual([r["key"] for r in result["results"]], [item.key for item in items])

    async def test_unknown_field_rejected(self) -> None:
        with self.assertRaises(ValueError):
            await NoteAnalyzer(FakeProvider([], {})).search("COLL", "x", field="abstract")

    async def test_upstream_failure_propagates(self) -> None:
        provider = FakeProvider(
            [_item("A1"), _item("A2")],
            {"A1": [analysis_note("N1", "A1", Summary="Shared topic")]},
            failing=["A2"],
        )
        with self.assertRaises(ZoteroError) as ctx:
            await NoteAnalyzer(provider).search("COLL", "shared")
        self.assertEqual(ctx.exception.code, "ZOTERO_UPSTREAM_ERROR")

    async def test_earliest_failure_in_batch_wins(self) -> None:
        provider = FakeProvider(
            [_item("A1"), _item("A2"), _item("A3")],
            {},
            failing=["A1", "A2"],
            delays={"A1": 0.02},
        )
        with self.assertRaises(ZoteroError) as ctx:
            await NoteAnalyzer(provider, concurrency=3).search("COLL", "shared")
        self.assertEqual(ctx.exception.details["item_key"], "A1")
        self.assertEqual(sorted(provider.note_requests), ["A1", "A2", "A3"])

    async def test_snippet_survives_case_folding_that_changes_length(self) -> None:
        # "İ".lower() is two code points long.
        text = "Elicit Analysis " + "İ" * 250 + " climate study"
        provider = FakeProvider([_item("A1")], {"A1": [Note(key="N1", parent_key="A1", content=f"<p>{text}</p>")]})

        result = await NoteAnalyzer(provider).search("COLL", "Climate")

        context = result["results"][0]["context"]
        self.assertTrue(context.endswith(" climate study"))
        self.assertEqual(context, text[text.index("climate") - 100 :])


class SummaryTests(unittest.IsolatedAsyncioTestCase):
    async def test_counts_designs_regions_and_coverage(self) -> None:
        items = [_item("A1"), _item("A2"), _item("A3"), _item("A4")]
        notes = {
            "A1": [analysis_note("N1", "A1", Region="Europe", **{"Study Design": "RCT"})],
            "A2": [analysis_note("N2", "A2", Region="Europe", **{"Study Design": "Cohort"})],
            "A3": [analysis_note("N3", "A3", Region="Asia", **{"Study Design": "RCT"})],
            "A4": [plain_note("N4", "A4")],
        }
        summary = await NoteAnalyzer(FakeProvider(items, notes)).summarize("COLL", include_details=True)

        self.assertEqual(summary["total_items"], 4)
        self.assertEqual(summary["items_with_analysis"], 3)
        self.assertEqual(summary["coverage_percentage"], 75)
        self.assertEqual(summary["study_designs"], {"RCT": 2, "Cohort": 1})
        self.assertEqual(list(summary["study_designs"]), ["RCT", "Cohort"])
        self.assertEqual(summary["regions"], {"Europe": 2, "Asia": 1})
        self.assertEqual(summary["field_coverage"]["Study Design"], 3)
        self.assertEqual(summary["field_coverage"]["Limitations"], 0)
        self.assertEqual(len(summary["field_coverage"]), 12)
        self.assertEqual([paper["key"] for paper in summary["papers"]], ["A1", "A2", "A3"])
        self.assertIn("Region", summary["papers"][0]["fields_present"])

    async def test_empty_collection(self) -> None:
        summary = await NoteAnalyzer(FakeProvider([], {})).summarize("COLL")

        self.assertEqual(summary["total_items"], 0)
        self.assertEqual(summary["items_with_analysis"], 0)
        self.assertIsNone(summary["coverage_percentage"])
        self.assertEqual(summary["study_designs"], {})
        self.assertEqual(summary["regions"], {})
        self.assertEqual(len(summary["field_coverage"]), 12)
        self.assertEqual(set(summary["field_coverage"].values()), {0})
        self.assertNotIn("papers", summary)

    async def test_coverage_rounds_half_up(self) -> None:
        items = [_item(f"A{i}") for i in range(8)]
        notes = {"A0": [analysis_note("N0", "A0", Summary="Only analysed paper")]}
        one = await NoteAnalyzer(FakeProvider(items, notes)).summarize("COLL")
        self.assertEqual(one["coverage_percentage"], 13)

        notes.update({key: [analysis_note("N" + key, key, Summary="Another")] for key in ("A1", "A2")})
        three = await NoteAnalyzer(FakeProvider(items, notes)).summarize("COLL")
        self.assertEqual(three["coverage_percentage"], 38)

    async def test_merge_policy_combines_notes(self) -> None:
        items = [_item("A1")]
        notes = {
            "A1": [
                analysis_note("N1", "A1", Summary="First pass"),
                analysis_note("N2", "A1", Region="Africa"),
            ]
        }
        first = await NoteAnalyzer(FakeProvider(items, notes)).summarize("COLL")
        self.assertEqual(first["regions"], {})

        merged = await NoteAnalyzer(FakeProvider(items, notes), selection=NoteSelection.MERGE).summarize("COLL")
        self.assertEqual(merged["regions"], {"Africa": 1})
        self.assertEqual(merged["items_with_analysis"], 1)


class GapTests(unittest.IsolatedAsyncioTestCase):
    async def test_gap_lands_in_every_matching_theme(self) -> None:
        gap = "Longitudinal causal evidence is lacking"
        provider = FakeProvider([_item("A1")], {"A1": [analysis_note("N1", "A1", **{"Research Gaps": gap})]})

        result = await NoteAnalyzer(provider).extract_gaps("COLL")

        self.assertEqual(result["total_gaps"], 1)
        self.assertEqual(result["papers_with_gaps"], 1)
        self.assertEqual(result["gaps"][0], {"paper_key": "A1", "paper_title": "Paper A1", "gap": gap})
        self.assertEqual(set(result["themes"]), {"longitudinal", "causal"})
        self.assertEqual(result["themes"]["causal"][0]["gap"], gap)

    async def test_future_research_is_typed_and_short_values_skipped(self) -> None:
        items = [_item("A1"), _item("A2")]
        notes = {
            "A1": [
                analysis_note(
                    "N1",
                    "A1",
                    **{"Research Gaps": "Not specified", "Future Research": "Larger randomized samples needed"},
                )
            ],
            "A2": [analysis_note("N2", "A2", **{"Research Gaps": "Too short"})],
        }
        result = await NoteAnalyzer(FakeProvider(items, notes)).extract_gaps("COLL", group_similar=False)

        self.assertEqual(result["total_gaps"], 1)
        self.assertEqual(result["papers_with_gaps"], 1)
        self.assertEqual(result["gaps"][0]["type"], "future_research")
        self.assertNotIn("themes", result)

    async def test_paper_with_both_sources_counted_once(self) -> None:
        note = analysis_note(
            "N1",
            "A1",
            **{"Research Gaps": "Few studies outside Europe", "Future Research": "Machine learning approaches"},
        )
        result = await NoteAnalyzer(FakeProvider([_item("A1")], {"A1": [note]})).extract_gaps("COLL")

        self.assertEqual(result["total_gaps"], 2)
        self.assertEqual(result["papers_with_gaps"], 1)
        self.assertEqual(list(result["themes"]), ["machine learning"])


class EnvSettingsTests(unittest.TestCase):
    def test_concurrency_from_env(self) -> None:
        with patch.dict(os.environ, {"ZOTERO_NOTE_FETCH_CONCURRENCY": "3"}):
            self.assertEqual(load_concurrency_from_env(), 3)
        with patch.dict(os.environ, {"ZOTERO_NOTE_FETCH_CONCURRENCY": "zero"}):
            self.assertEqual(load_concurrency_from_env(), DEFAULT_CONCURRENCY)
        with patch.dict(os.environ, {"ZOTERO_NOTE_FETCH_CONCURRENCY": "-2"}):
            self.assertEqual(load_concurrency_from_env(), DEFAULT_CONCURRENCY)

    def test_selection_from_env(self) -> None:
        with patch.dict(os.environ, {"ZOTERO_NOTE_SELECTION": "Merge"}):
            self.assertIs(load_selection_from_env(), NoteSelection.MERGE)
        with patch.dict(os.environ, {"ZOTERO_NOTE_SELECTION": "latest"}):
            self.assertIs(load_selection_from_env(), NoteSelection.FIRST)


if __name__ == "__main__":
    unittest.main()
