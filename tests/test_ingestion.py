import logging

import pytest
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError

from rag_ingest.core import ingestion
from rag_ingest.core.errors import (
    BadRequest,
    EmptyDocument,
    ExtractionFailed,
    Forbidden,
    IngestionError,
    NoChunksGenerated,
    PayloadTooLarge,
    PersistenceError,
    QuotaExceeded,
    StorageReadError,
    UnsupportedFileType,
)
from rag_ingest.core.ingestion import (
    IngestionConfig,
    IngestionPipeline,
    content_hash,
    sanitize_filename,
    write_document,
)
from rag_ingest.core.repository import DocumentRepository
from rag_ingest.models.chunk import RagChunk
from rag_ingest.models.document import RagDocument

from conftest import FakeBlobStore, USER_ID, words


def _db_error():
    return OperationalError("INSERT", {}, Exception("database is locked"))


@pytest.fixture
def repository(db_session):
    return DocumentRepository(db_session)


@pytest.fixture
def pipeline(repository, blob_store, config):
    return IngestionPipeline(repository, blob_store, config)


def _seed_documents(repository, count, user_id=USER_ID):
    for n in range(count):
        repository.add_document(user_id, f"doc{n}.txt", f"hash{n}")
    repository.commit()


class TestHelpers:
    def test_content_hash_is_hex_sha256(self):
        assert content_hash(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("../../etc/pa$$wd.txt", "pawd.txt"),
            ("C:\\Users\\me\\résumé final.pdf", "rsum final.pdf"),
            ("report-v2_final.docx", "report-v2_final.docx"),
            ("$$$", "unnamed"),
        ],
    )
    def test_sanitize_filename(self, raw, expected):
        assert sanitize_filename(raw) == expected

    def test_sanitize_filename_truncates(self):
        assert len(sanitize_filename("a" * 400 + ".txt")) == 255


class TestConfig:
    def test_defaults(self):
        config = IngestionConfig()
        assert (config.chunk_size, config.chunk_overlap) == (800, 150)
        assert config.max_documents_per_user == 3
        assert config.max_file_size_bytes == 5 * 1024 * 1024

    def test_overlap_must_be_smaller_than_chunk_size(self):
        with pytest.raises(ValidationError):
            IngestionConfig(chunk_size=100, chunk_overlap=100)

    def test_unknown_strategy(self):
        with pytest.raises(ValidationError):
            IngestionConfig(extraction_strategy="ocr")

    def test_extension_without_extractor(self):
        with pytest.raises(ValidationError):
            IngestionConfig(allowed_extensions=("txt", "rtf"))


class TestGuards:
    @pytest.mark.parametrize("name", ["a.exe", "a.png", "a"])
    def test_unsupported_extension_never_touches_storage(self, pipeline, blob_store, user, name):
        with pytest.raises(UnsupportedFileType) as exc:
            pipeline.run(user, name, f"{USER_ID}/{name}")

        assert exc.value.status_code == 400
        assert blob_store.downloads == []

    def test_missing_fields(self, pipeline, user):
        with pytest.raises(BadRequest, match="Missing file_name"):
            pipeline.run(user, "  ", f"{USER_ID}/a.txt")
        with pytest.raises(BadRequest, match="Missing file_path"):
            pipeline.run(user, "a.txt", None)

    def test_foreign_path_is_forbidden(self, pipeline, blob_store, user):
        blob_store.put("someone-else/a.txt", b"hello")

        with pytest.raises(Forbidden):
            pipeline.run(user, "a.txt", "someone-else/a.txt")
        assert blob_store.downloads == []

    def test_prefix_must_end_at_a_path_separator(self, pipeline, user):
        with pytest.raises(Forbidden):
            pipeline.run(user, "a.txt", f"{USER_ID}-evil/a.txt")

    def test_oversized_payload_removes_blob_once(self, pipeline, blob_store, user):
        path = blob_store.put(f"{USER_ID}/big.txt", b"a" * (6 * 1024 * 1024))

        with pytest.raises(PayloadTooLarge, match="5MB"):
            pipeline.run(user, "big.txt", path)
        assert blob_store.removed == [path]

    def test_exact_size_limit_is_accepted(self, repository, blob_store, user):
        config = IngestionConfig(max_file_size_bytes=10)
        path = blob_store.put(f"{USER_ID}/ten.txt", b"0123456789")

        result = IngestionPipeline(repository, blob_store, config).run(user, "ten.txt", path)

        assert result.chunks_created == 1

    def test_quota_reached(self, pipeline, repository, blob_store, user):
        _seed_documents(repository, 3)
        path = blob_store.put(f"{USER_ID}/a.txt", b"fresh content")

        with pytest.raises(QuotaExceeded, match=r"\(3 files\)"):
            pipeline.run(user, "a.txt", path)
        assert blob_store.removed == [path]

    def test_quota_counts_only_the_callers_documents(self, pipeline, repository, blob_store, user):
        _seed_documents(repository, 2)
        _seed_documents(repository, 5, user_id="other-user")
        path = blob_store.put(f"{USER_ID}/a.txt", b"fresh content")

        assert pipeline.run(user, "a.txt", path).chunks_created == 1

    def test_missing_blob_is_a_storage_error_without_cleanup(self, pipeline, blob_store, user):
        with pytest.raises(StorageReadError) as exc:
            pipeline.run(user, "a.txt", f"{USER_ID}/gone.txt")

        assert exc.value.status_code == 500
        assert exc.value.step == "download"
        assert blob_store.removed == []

    def test_expired_deadline_stops_before_download(self, repository, blob_store, user):
        config = IngestionConfig(request_timeout_seconds=0)
        path = blob_store.put(f"{USER_ID}/a.txt", b"content")

        with pytest.raises(StorageReadError, match="deadline"):
            IngestionPipeline(repository, blob_store, config).run(user, "a.txt", path)
        assert blob_store.downloads == []


class TestDeduplication:
    def test_second_identical_upload_is_a_duplicate(self, pipeline, repository, blob_store, user):
        data = b"same bytes every time"
        first = pipeline.run(user, "a.txt", blob_store.put(f"{USER_ID}/one.txt", data))
        second = pipeline.run(user, "b.txt", blob_store.put(f"{USER_ID}/two.txt", data))

        assert second.duplicate is True
        assert second.chunks_created == 0
        assert second.document_id == first.document_id
        assert repository.count_for_user(USER_ID) == 1
        assert blob_store.removed == [f"{USER_ID}/one.txt", f"{USER_ID}/two.txt"]

    def test_duplicate_skips_extraction(self, pipeline, repository, blob_store, user, monkeypatch):
        data = b"already indexed"
        pipeline.run(user, "a.txt", blob_store.put(f"{USER_ID}/one.txt", data))

        def _fail(*args, **kwargs):
            raise AssertionError("extractor should not be built for duplicates")

        monkeypatch.setattr(ingestion, "build_extractor", _fail)
        result = pipeline.run(user, "a.txt", blob_store.put(f"{USER_ID}/two.txt", data))
        assert result.duplicate is True

    def test_same_bytes_for_another_user_are_not_duplicates(self, pipeline, repository, blob_store, user):
        repository.add_document("other-user", "a.txt", content_hash(b"shared"))
        repository.commit()

        result = pipeline.run(user, "a.txt", blob_store.put(f"{USER_ID}/a.txt", b"shared"))

        assert result.duplicate is None
        assert result.chunks_created == 1


class TestExtractionAndChunking:
    def test_whitespace_only_file_is_an_empty_document(self, pipeline, blob_store, user):
        path = blob_store.put(f"{USER_ID}/blank.txt", b"  \n\n\t \n")

        with pytest.raises(EmptyDocument) as exc:
            pipeline.run(user, "blank.txt", path)
        assert exc.value.status_code == 422
        assert blob_store.removed == [path]

    def test_pdf_without_text_is_an_empty_document(self, pipeline, blob_store, user):
        path = blob_store.put(f"{USER_ID}/scan.pdf", b"%PDF-1.4\nstream\n0 0 m S\nendstream\n")

        with pytest.raises(EmptyDocument):
            pipeline.run(user, "scan.pdf", path)

    def test_extraction_timeout_cleans_up(self, pipeline, blob_store, user, monkeypatch):
        class _SlowModel:
            name = "model"

            def extract(self, filename, data):
                raise ExtractionFailed("Text extraction timed out after 60s")

        monkeypatch.setattr(ingestion, "build_extractor", lambda *a, **kw: _SlowModel())
        path = blob_store.put(f"{USER_ID}/a.pdf", b"%PDF")

        with pytest.raises(ExtractionFailed, match="timed out"):
            pipeline.run(user, "a.pdf", path)
        assert blob_store.removed == [path]

    def test_extractor_crash_becomes_extraction_failed(self, pipeline, blob_store, user, monkeypatch):
        class _Broken:
            name = "pypdf"

            def extract(self, filename, data):
                raise ValueError("bad xref table")

        monkeypatch.setattr(ingestion, "build_extractor", lambda *a, **kw: _Broken())
        path = blob_store.put(f"{USER_ID}/a.pdf", b"%PDF")

        with pytest.raises(ExtractionFailed, match="Text extraction failed: bad xref table"):
            pipeline.run(user, "a.pdf", path)

    def test_no_chunks(self, pipeline, blob_store, user, monkeypatch):
        monkeypatch.setattr(ingestion, "chunk_text", lambda *a, **kw: [])
        path = blob_store.put(f"{USER_ID}/a.txt", b"text")

        with pytest.raises(NoChunksGenerated):
            pipeline.run(user, "a.txt", path)
        assert blob_store.removed == [path]

    def test_model_strategy_passes_clamped_timeout(self, repository, blob_store, user, monkeypatch):
        seen = {}

        class _Model:
            name = "model"

            def extract(self, filename, data):
                return "model text"

        def _build(filename, strategy, **kwargs):
            seen.update(kwargs, strategy=strategy)
            return _Model()

        monkeypatch.setattr(ingestion, "build_extractor", _build)
        config = IngestionConfig(
            extraction_strategy="model",
            openai_api_key="sk-test",
            extraction_timeout_seconds=60,
            request_timeout_seconds=30,
        )
        path = blob_store.put(f"{USER_ID}/a.pdf", b"%PDF")

        IngestionPipeline(repository, blob_store, config).run(user, "a.pdf", path)

        assert seen["strategy"] == "model"
        assert seen["api_key"] == "sk-test"
        assert 0 < seen["timeout"] <= 30
        assert 0 < seen["deadline"]() <= 30

    def test_extractor_name_is_logged(self, pipeline, blob_store, user, caplog):
        caplog.set_level(logging.INFO, logger="rag_ingest.core.ingestion")
        path = blob_store.put(f"{USER_ID}/a.txt", b"logged")

        pipeline.run(user, "a.txt", path)

        assert "Extracting text from a.txt with plain_text" in caplog.text


class TestPersistence:
    def test_success_stores_document_and_chunks(self, pipeline, repository, db_session, blob_store, user):
        text = "\n\n".join([words("a", 50), words("b", 50), words("c", 50)])
        path = blob_store.put(f"{USER_ID}/notes.txt", text.encode())

        result = pipeline.run(user, "../notes?.txt", path)

        assert result.chunks_created == 1
        assert result.duplicate is None
        doc = repository.get(result.document_id)
        assert doc.file_name == "notes.txt"
        assert doc.file_hash == content_hash(text.encode())
        (chunk,) = db_session.query(RagChunk).all()
        assert chunk.user_id == USER_ID
        assert chunk.chunk_index == 0
        assert chunk.embedding_json == ""
        assert chunk.chunk_text.split() == text.split()
        assert blob_store.removed == [path]

    def test_document_insert_failure_skips_chunks(self, repository, monkeypatch):
        calls = []

        def _fail(*args):
            raise _db_error()

        monkeypatch.setattr(repository, "add_document", _fail)
        monkeypatch.setattr(repository, "add_chunks", lambda *a: calls.append(a))

        with pytest.raises(PersistenceError, match="Failed to create document"):
            write_document(repository, USER_ID, "a.txt", "h", ["chunk"])
        assert calls == []

    def test_chunk_insert_failure_rolls_back_document(self, pipeline, repository, db_session, blob_store, user, monkeypatch):
        def _fail(*args):
            raise _db_error()

        monkeypatch.setattr(repository, "add_chunks", _fail)
        path = blob_store.put(f"{USER_ID}/a.txt", b"some text")

        with pytest.raises(PersistenceError, match="Failed to store chunks") as exc:
            pipeline.run(user, "a.txt", path)

        assert exc.value.step == "persist"
        assert db_session.query(RagDocument).count() == 0
        assert blob_store.removed == [path]

    def test_cleanup_failure_does_not_mask_result(self, repository, user):
        store = FakeBlobStore(fail_remove=True)
        path = store.put(f"{USER_ID}/a.txt", b"kept")

        result = IngestionPipeline(repository, store).run(user, "a.txt", path)

        assert result.chunks_created == 1
        assert store.removed == [path]

    def test_unexpected_error_is_wrapped(self, pipeline, repository, blob_store, user, monkeypatch):
        monkeypatch.setattr(repository, "count_for_user", lambda user_id: 1 / 0)
        path = blob_store.put(f"{USER_ID}/a.txt", b"text")

        with pytest.raises(IngestionError) as exc:
            pipeline.run(user, "a.txt", path)

        assert exc.value.status_code == 500
        assert exc.value.step == "internal"
        assert exc.value.message.startswith("Unexpected error:")
        assert blob_store.removed == [path]

    def test_quota_query_failure_is_a_persistence_error(self, pipeline, repository, blob_store, user, monkeypatch):
        def _fail(user_id):
            raise _db_error()

        monkeypatch.setattr(repository, "count_for_user", _fail)
        path = blob_store.put(f"{USER_ID}/a.txt", b"text")

        with pytest.raises(PersistenceError) as exc:
            pipeline.run(user, "a.txt", path)
        assert exc.value.step == "quota"
