from ingestion.email.classifier import InclusionPolicy
from ingestion.email.processor import EmailProcessor
from tests.fakes import FakeDocumentStore, FakeEmbeddings
from tests.gmail_fixtures import make_message


def _processor(embeddings=None):
    store = FakeDocumentStore()
    return EmailProcessor(store, embedding_model=embeddings or FakeEmbeddings(dim=3)), store


def test_processed_message_is_embedded_and_stored():
    processor, store = _processor()
    outcome = processor.process("user-1", make_message("m1"), InclusionPolicy())

    assert outcome.status == "processed"
    row = store.rows[("user-1", "email", "m1")]
    assert row["embedding"] == processor.embedding_model.embed_documents([row["content"]])[0]
    assert row["metadata"]["thread_id"] == "t-1"


def test_filtered_message_is_skipped_without_embedding():
    embeddings = FakeEmbeddings()
    processor, store = _processor(embeddings)
    outcome = processor.process("user-1", make_message("m1", ["SPAM", "UNREAD"]), InclusionPolicy())

    assert outcome.status == "skipped"
    assert outcome.reason == "spam_or_trash"
    assert embeddings.calls == []
    assert store.rows == {}


def test_embedding_failure_is_reported_not_raised():
    processor, store = _processor(FakeEmbeddings(fail=True))
    outcome = processor.process("user-1", make_message("m1"), InclusionPolicy())

    assert outcome.status == "failed"
    assert outcome.reason.startswith("embedding:")
    assert store.rows == {}


def test_persistence_failure_is_reported_not_raised():
    processor, store = _processor()
    store.fail_ids = {"m1"}
    outcome = processor.process("user-1", make_message("m1"), InclusionPolicy())

    assert outcome.status == "failed"
    assert "m1" in outcome.reason


def test_content_limit_override_applies():
    processor, store = _processor()
    processor.process("user-1", make_message("m1", plain="y" * 400), InclusionPolicy(), max_content_length=200)

    assert len(store.rows[("user-1", "email", "m1")]["content"]) == 200
