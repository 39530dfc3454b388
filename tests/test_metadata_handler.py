from __future__ import annotations

import allure

from study_pipeline.tasks.metadata import handle_metadata, summarize_files

pytestmark = [
    allure.epic("Lectures"),
    allure.feature("Metadata Suggestions"),
]


def test_metadata_parses_title_and_description(make_provider, make_context) -> None:
    provider = make_provider(
        completions=['{"title": "Thermodynamics I", "description": "Laws of heat."}'],
    )
    payload = {
        "files": [
            {"name": "thermo_week1.pdf", "notes": "first law"},
            {"name": "slides.pptx"},
            {"notes": "no name"},
        ],
    }

    outcome = handle_metadata(payload, make_context(provider))

    assert outcome.result == {"title": "Thermodynamics I", "description": "Laws of heat."}
    [parts] = provider.calls_named("complete")
    assert "1. thermo_week1.pdf - first law\n2. slides.pptx" in parts[0].text
    assert outcome.usage is not None
    assert outcome.usage.feature == "lecture_metadata"


def test_metadata_falls_back_to_default_title(make_provider, make_context) -> None:
    provider = make_provider(completions=["  A lecture about heat engines.  "])

    outcome = handle_metadata({}, make_context(provider))

    assert outcome.result == {"title": "New Lecture", "description": "A lecture about heat engines."}
    [parts] = provider.calls_named("complete")
    assert "No details provided." in parts[0].text


def test_metadata_blank_title_uses_default(make_provider, make_context) -> None:
    provider = make_provider(completions=['{"title": "", "description": "Something"}'])

    outcome = handle_metadata({"files": []}, make_context(provider))

    assert outcome.result["title"] == "New Lecture"


def test_summarize_files_ignores_non_lists() -> None:
    assert summarize_files("file.pdf") == ""
