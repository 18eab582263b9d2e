from __future__ import annotations

from datetime import datetime, timezone

from historylab.chat.citations import (
    DocumentRegistry,
    build_registry,
    citation_list,
    document_url,
    render_messages,
    render_text,
)
from historylab.chat.export import export_conversation
from historylab.chat.messages import user_message
from historylab.chat.reconciliation import rejection_result
from historylab.database.config.config import settings

from tests.helpers import assistant, document, invocation_part, search_result, text


def _search(call_id: str, source_keys: list[str], status: str = "success"):
    return invocation_part(call_id, "queryCollection", {"query": "q"},
                           result=search_result(source_keys, status), resolved=True)


def test_registry_assigns_stable_ids_from_one() -> None:
    registry = DocumentRegistry()

    assert registry.register("k1", "First") == 1
    assert registry.register("k2") == 2
    assert registry.register("k1") == 1
    assert registry.title("k2") == "Document 2"
    assert registry.title("unknown") == "Document"
    assert [doc.source_key for doc in registry] == ["k1", "k2"]


def test_document_url_uses_viewer_base() -> None:
    assert document_url("docs/a.txt") == f"{settings.DOC_VIEWER_URL}/docs/a.txt"


def test_render_links_citations_in_order_of_first_appearance() -> None:
    history = [
        user_message("tell me"),
        assistant(_search("c1", ["A", "B"]), text("See {{cite:B}} and {{cite:A}} and {{cite:C}}.")),
    ]

    rendered, registry = render_messages(history)

    assert rendered[1].text() == (
        f"See [2]({document_url('B')}) and [1]({document_url('A')}) and [3]({document_url('C')})."
    )
    assert citation_list(registry) == [
        {"id": 1, "sourceKey": "A", "title": "Title of A", "url": document_url("A")},
        {"id": 2, "sourceKey": "B", "title": "Title of B", "url": document_url("B")},
        {"id": 3, "sourceKey": "C", "title": "Document 3", "url": document_url("C")},
    ]
    # raw history keeps the tokens
    assert "{{cite:B}}" in history[1].text()


def test_rendering_is_stable_across_reloads() -> None:
    history = [assistant(_search("c1", ["A"]), text("{{cite:A}}"))]

    first, _ = render_messages(history)
    second, _ = render_messages(history)

    assert first[0].text() == second[0].text()


def test_failed_or_pending_searches_register_nothing() -> None:
    history = [assistant(
        _search("c1", ["A"], status="error"),
        invocation_part("c2", "queryCollection", {"query": "q"}),
        invocation_part("c3", "getDocumentText", result=search_result(["B"]), resolved=True),
    )]

    assert len(build_registry(history)) == 0


def test_render_text_registers_unknown_keys() -> None:
    registry = DocumentRegistry()

    assert render_text("{{cite:X}} {{cite:X}}", registry) == f"[1]({document_url('X')}) [1]({document_url('X')})"


def test_export_scenario_with_repeated_citation() -> None:
    created = datetime(1962, 10, 16, 9, 30, tzinfo=timezone.utc)
    found = document("docs/exc.txt", title="ExComm minutes", doc_id="exc-1",
                     authored="1962-10-16T00:00:00", classification="TOP SECRET", corpus="frus")
    result = {"status": "success", "documents": [found], "matches": 1}
    history = [
        user_message("What did ExComm discuss?").model_copy(update={"created_at": created}),
        assistant(
            invocation_part("c1", "queryCollection", {"query": "excomm"}, result=result, resolved=True),
            text("They discussed a blockade {{cite:docs/exc.txt}}, again {{cite:docs/exc.txt}}."),
        ).model_copy(update={"created_at": created}),
    ]

    markdown = export_conversation(history, exported_at=created)

    link = f"[Document #1]({document_url('docs/exc.txt')})"
    assert markdown.startswith("# HistoryLab AI Conversation")
    assert "## User (1962-10-16 09:30)" in markdown
    assert "## HistoryLab AI (1962-10-16 09:30)" in markdown
    assert f"They discussed a blockade {link}, again {link}." in markdown
    assert "### Documents Found (1)" in markdown
    assert markdown.count("### Document #1: ExComm minutes") == 1
    assert "- **Date**: 1962-10-16" in markdown
    assert "- **Classification**: TOP SECRET" in markdown
    assert "- **Source Key**: `docs/exc.txt`" in markdown
    assert "Document #2" not in markdown


def test_export_without_documents_has_no_reference_section() -> None:
    markdown = export_conversation([user_message("hi"), assistant(text("hello"))])

    assert "## Document References" not in markdown
    assert "hello" in markdown


def test_export_notes_declined_tool_calls() -> None:
    declined = invocation_part("fb1", "submitFeedback", {"description": "d"},
                               result=rejection_result("submitFeedback"), resolved=True)

    markdown = export_conversation([user_message("report it"), assistant(declined, text("Understood."))])

    assert "*Declined by the user: `submitFeedback`*" in markdown
    assert "Documents Found" not in markdown
