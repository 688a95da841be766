"""Pipeline tests against in-memory collaborators.

Covers the per-conversation state machine (clean, analyse, decide, label, log,
finalise), failure isolation between conversations, and the batch
preconditions that abort a run before anything is touched.
"""

from __future__ import annotations

import json

import pytest

from conftest import (
    LABELS,
    FakeDocuments,
    FakeMailbox,
    FakeSheet,
    ScriptedAI,
    build_test_pipeline,
    make_conversation,
)
from inbox_triage.decision_log import LOG_COLUMNS
from inbox_triage.errors import AIBackendError, ContextUnavailableError, LabelNotFoundError
from inbox_triage.mailbox import Label
from inbox_triage.triage_logic import (
    TriageState,
    _triage_prompt,
    clean_outcome_labels,
    draft_to_html,
)

OUTCOME_NAMES = {LABELS.drafted, LABELS.manual_review, LABELS.no_reply_needed}


def _reply(is_answerable=False, no_reply_needed=False, reasoning="because", draft=""):
    return json.dumps(
        {
            "isAnswerable": is_answerable,
            "noReplyNeeded": no_reply_needed,
            "reasoning": reasoning,
            "draft": draft,
        }
    )


def _outcome_labels():
    return [Label(n, f"id-{n}") for n in sorted(OUTCOME_NAMES)]


@pytest.mark.parametrize(
    "start",
    [
        set(),
        {LABELS.drafted},
        {LABELS.manual_review, LABELS.no_reply_needed},
        OUTCOME_NAMES,
    ],
)
def test_clean_outcome_labels_is_idempotent(start):
    conv = make_conversation("c1", labels={LABELS.incoming, *start})
    mailbox = FakeMailbox([conv])

    first = clean_outcome_labels(mailbox, conv, _outcome_labels())
    assert not (conv.labels & OUTCOME_NAMES)
    assert first == len(start)

    second = clean_outcome_labels(mailbox, conv, _outcome_labels())
    assert second == 0
    assert not (conv.labels & OUTCOME_NAMES)
    assert LABELS.incoming in conv.labels


@pytest.mark.parametrize(
    "start, reply, expected",
    [
        ({LABELS.drafted}, _reply(no_reply_needed=True), LABELS.no_reply_needed),
        ({LABELS.no_reply_needed, LABELS.manual_review}, _reply(is_answerable=True, draft="Hi"), LABELS.drafted),
        (OUTCOME_NAMES, "garbage", LABELS.manual_review),
        (set(), _reply(), LABELS.manual_review),
    ],
)
def test_exactly_one_outcome_label_after_processing(start, reply, expected):
    conv = make_conversation("c1", labels={LABELS.incoming, *start})
    mailbox = FakeMailbox([conv])
    pipeline = build_test_pipeline(mailbox, ScriptedAI([reply]))

    report = pipeline.run_batch()

    assert report.results[0].state == TriageState.FINALIZED
    assert conv.labels & OUTCOME_NAMES == {expected}


def test_no_reply_scenario():
    conv = make_conversation(
        "news",
        subject="Weekly Newsletter #42",
        body="This week: ten new features, a webinar recording and our team photo.",
    )
    mailbox = FakeMailbox([conv])
    sheet = FakeSheet()
    ai = ScriptedAI([_reply(no_reply_needed=True, reasoning="promotional broadcast")])

    report = build_test_pipeline(mailbox, ai, sheet=sheet).run_batch()

    result = report.results[0]
    assert result.label == LABELS.no_reply_needed
    assert result.reasoning == "promotional broadcast"
    assert conv.labels == {LABELS.no_reply_needed}
    assert mailbox.drafts == []
    assert sheet.rows[0] == LOG_COLUMNS
    [row] = sheet.records
    assert row[1:] == [
        "https://outlook.example/news",
        "Weekly Newsletter #42",
        "alice@example.com",
        LABELS.no_reply_needed,
        "promotional broadcast",
        "news",
        "news-m2",
    ]


def test_answerable_scenario_creates_draft():
    conv = make_conversation("support", body="What are your support hours?")
    mailbox = FakeMailbox([conv])
    ai = ScriptedAI(
        [
            _reply(
                is_answerable=True,
                reasoning="answer found in context",
                draft="Our support hours are 9am-5pm.",
            )
        ]
    )

    report = build_test_pipeline(mailbox, ai).run_batch()

    assert mailbox.drafts == [("support", "Our support hours are 9am-5pm.")]
    assert report.results[0].draft_id == "draft-support"
    assert conv.labels == {LABELS.drafted}
    assert "Support hours: 9am-5pm" in ai.prompts[0]
    assert "What are your support hours?" in ai.prompts[0]


def test_draft_newlines_become_line_breaks():
    conv = make_conversation("c1")
    mailbox = FakeMailbox([conv])
    ai = ScriptedAI([_reply(is_answerable=True, draft="Hi Alice,\nYes we can.\n\nBest")])

    build_test_pipeline(mailbox, ai).run_batch()

    assert mailbox.drafts == [("c1", "Hi Alice,<br>Yes we can.<br><br>Best")]
    assert draft_to_html("a\r\nb") == "a<br>b"


def test_malformed_model_output_goes_to_manual_review():
    conv = make_conversation("c1")
    mailbox = FakeMailbox([conv])
    sheet = FakeSheet()

    report = build_test_pipeline(mailbox, ScriptedAI(["not json"]), sheet=sheet).run_batch()

    result = report.results[0]
    assert result.label == LABELS.manual_review
    assert result.reasoning == "AI analysis failed"
    assert conv.labels == {LABELS.manual_review}
    assert sheet.records[0][4:6] == [LABELS.manual_review, "AI analysis failed"]


def test_answerable_wins_when_both_flags_set():
    conv = make_conversation("c1")
    mailbox = FakeMailbox([conv])
    ai = ScriptedAI([_reply(is_answerable=True, no_reply_needed=True, draft="Sure")])

    report = build_test_pipeline(mailbox, ai).run_batch()

    assert report.results[0].label == LABELS.drafted
    assert mailbox.drafts == [("c1", "Sure")]


def test_unexpected_failure_is_isolated_to_one_conversation():
    convs = [make_conversation(f"c{i}") for i in (1, 2, 3)]
    mailbox = FakeMailbox(convs)
    mailbox.fail("draft", "c2", RuntimeError("mailbox quota exceeded"))
    sheet = FakeSheet()
    ai = ScriptedAI([_reply(is_answerable=True, draft="Hello")] * 3)

    report = build_test_pipeline(mailbox, ai, sheet=sheet).run_batch()

    states = [r.state for r in report.results]
    assert states == [TriageState.FINALIZED, TriageState.ERRORED, TriageState.FINALIZED]
    assert report.results[1].failed_after == TriageState.DECIDED
    assert "mailbox quota exceeded" in report.results[1].error

    error_rows = [r for r in sheet.records if r[4] == "ERROR"]
    assert len(error_rows) == 1
    assert error_rows[0][6] == "c2"
    assert "mailbox quota exceeded" in error_rows[0][5]

    # Not finalised, so the next run picks it up again.
    assert LABELS.incoming in convs[1].labels
    assert LABELS.incoming not in convs[0].labels
    assert LABELS.incoming not in convs[2].labels
    assert report.counts() == {LABELS.drafted: 2, "ERROR": 1}


def test_backend_error_degrades_only_that_conversation():
    convs = [make_conversation(f"c{i}") for i in (1, 2, 3)]
    mailbox = FakeMailbox(convs)
    ai = ScriptedAI(
        [
            _reply(no_reply_needed=True),
            AIBackendError("Model API returned 503: overloaded"),
            _reply(no_reply_needed=True),
        ]
    )

    report = build_test_pipeline(mailbox, ai).run_batch()

    assert [r.label for r in report.results] == [
        LABELS.no_reply_needed,
        LABELS.manual_review,
        LABELS.no_reply_needed,
    ]
    assert all(r.state == TriageState.FINALIZED for r in report.results)
    assert report.results[1].reasoning == "AI analysis failed"
    assert all(LABELS.incoming not in c.labels for c in convs)


def test_failed_error_log_write_does_not_stop_the_batch():
    convs = [make_conversation("c1"), make_conversation("c2")]
    mailbox = FakeMailbox(convs)
    mailbox.fail("add_label", "c1", RuntimeError("boom"))
    ai = ScriptedAI([_reply(no_reply_needed=True)] * 2)

    report = build_test_pipeline(mailbox, ai, sheet=FakeSheet(fail=True)).run_batch()

    assert [r.state for r in report.results] == [TriageState.ERRORED, TriageState.FINALIZED]
    assert convs[1].labels == {LABELS.no_reply_needed}


def test_missing_incoming_label_aborts_before_any_mutation():
    conv = make_conversation("c1", labels={"AI/Incoming", LABELS.drafted})
    mailbox = FakeMailbox([conv], existing_labels=())
    ai = ScriptedAI([])

    with pytest.raises(LabelNotFoundError):
        build_test_pipeline(mailbox, ai).run_batch()

    assert mailbox.mutations == 0
    assert mailbox.created == []
    assert ai.prompts == []


@pytest.mark.parametrize("text", ["", "   \n", OSError("drive item not found")])
def test_unusable_knowledge_base_aborts_the_run(text):
    conv = make_conversation("c1")
    mailbox = FakeMailbox([conv])
    sheet = FakeSheet()

    with pytest.raises(ContextUnavailableError):
        build_test_pipeline(
            mailbox, ScriptedAI([]), documents=FakeDocuments(text), sheet=sheet
        ).run_batch()

    assert mailbox.mutations == 0
    assert sheet.rows == []
    assert conv.labels == {LABELS.incoming}


def test_session_cache_loads_context_and_labels_once():
    convs = [make_conversation(f"c{i}") for i in range(3)]
    mailbox = FakeMailbox(convs)
    documents = FakeDocuments()
    ai = ScriptedAI([_reply(no_reply_needed=True)] * 3)
    pipeline = build_test_pipeline(mailbox, ai, documents=documents)

    pipeline.run_batch()

    assert documents.reads == 1
    assert sorted(mailbox.created) == sorted(OUTCOME_NAMES)

    # A new run gets a fresh cache.
    pipeline.run_batch()
    assert documents.reads == 2


def test_only_incoming_conversations_are_processed():
    tagged = make_conversation("c1")
    untagged = make_conversation("c2", labels={LABELS.drafted})
    mailbox = FakeMailbox([tagged, untagged])
    ai = ScriptedAI([_reply(no_reply_needed=True)])

    report = build_test_pipeline(mailbox, ai).run_batch()

    assert [r.conversation_id for r in report.results] == ["c1"]
    assert untagged.labels == {LABELS.drafted}


def test_existing_header_row_is_not_duplicated():
    sheet = FakeSheet()
    sheet.rows.append(list(LOG_COLUMNS))
    mailbox = FakeMailbox([make_conversation("c1")])

    build_test_pipeline(mailbox, ScriptedAI([_reply()]), sheet=sheet).run_batch()

    assert [r for r in sheet.rows if r == LOG_COLUMNS] == [LOG_COLUMNS]
    assert len(sheet.records) == 1


def test_prompt_embeds_style_context_and_email():
    message = make_conversation(
        "c1", subject="Refund?", sender="Carol <carol@example.com>", body="x" * 50
    ).last_message

    prompt = _triage_prompt("Sign off as Sam.", "Refunds within 30 days.", message, body_max_chars=20)

    assert "Sign off as Sam." in prompt
    assert "Refunds within 30 days." in prompt
    assert "From: Carol <carol@example.com>" in prompt
    assert "Subject: Refund?" in prompt
    assert "x" * 17 + "..." in prompt
    assert "x" * 21 not in prompt
    assert '"isAnswerable"' in prompt


def test_report_markdown_lists_each_conversation():
    convs = [make_conversation("c1", subject="A|B"), make_conversation("c2")]
    mailbox = FakeMailbox(convs)
    mailbox.fail("remove_label", "c2", RuntimeError("gone"))
    ai = ScriptedAI([_reply(no_reply_needed=True, reasoning="fyi")] * 2)

    report = build_test_pipeline(mailbox, ai).run_batch()
    md = report.to_markdown()

    assert "- processed: 2" in md
    assert f"| c1 | A\\|B | {LABELS.no_reply_needed} | fyi |" in md
    assert "| c2 |" in md and "ERROR (RuntimeError: gone)" in md
