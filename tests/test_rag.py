"""Document retrieval, answers, streaming and lesson conversations."""
import httpx
import openai
import pytest

from conftest import test_case, USER_ID
from tekbreed.database.app_db import get_app_db
from tekbreed.database.rag_db import get_rag_db
from tekbreed.services.rag_service import (
    NO_CONTEXT_ANSWER,
    bytes_to_embedding,
    chunk_text,
    cosine_similarity,
    embedding_to_bytes,
    get_rag_service,
)
from tekbreed.utils.llm_error_handler import LLMServiceException

OPENAI_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")

DOCKER_DOC = ("Docker deploy guide", "Use docker to deploy containers.")
REACT_DOC = ("React in containers", "React apps can run in docker too.")


def _timeout_error():
    return openai.APITimeoutError(request=OPENAI_REQUEST)


def _auth_error():
    return openai.AuthenticationError(
        "Invalid API key provided", response=httpx.Response(401, request=OPENAI_REQUEST), body=None
    )


def _server_error():
    return openai.InternalServerError(
        "The server had an error while processing your request",
        response=httpx.Response(500, request=OPENAI_REQUEST), body=None
    )


def _connection_error():
    return openai.APIConnectionError(request=OPENAI_REQUEST)


@pytest.fixture
def documents():
    service = get_rag_service()
    return [service.add_document(title, content, source="docs") for title, content in (DOCKER_DOC, REACT_DOC)]


# ══════════════════════════════════════════════════════════════════════════════
# CHUNKING AND VECTORS
# ══════════════════════════════════════════════════════════════════════════════

def test_chunk_text_short_text_is_one_chunk():
    assert chunk_text("  A short note.  ") == ["A short note."]
    assert chunk_text("") == []


def test_chunk_text_overlaps_without_sentence_breaks():
    chunks = chunk_text("a" * 2000, max_chunk_size=800, overlap=100)
    assert [len(chunk) for chunk in chunks] == [800, 800, 600]


def test_chunk_text_cuts_after_sentence_end():
    sentence = "FastAPI routes are plain functions. "
    text = sentence * 40

    chunks = chunk_text(text, max_chunk_size=800, overlap=100)

    assert len(chunks) > 1
    assert all(len(chunk) <= 800 for chunk in chunks)
    assert all(chunk.endswith(".") for chunk in chunks)


def test_chunk_text_break_threshold_tracks_chunk_start():
    text = ("a" * 599 + ".") * 4

    chunks = chunk_text(text, max_chunk_size=800, overlap=100)

    assert [len(chunk) for chunk in chunks] == [600, 800, 800, 400]
    assert chunks[0].endswith(".")


def test_cosine_similarity():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1.0], [1.0, 2.0])


def test_embedding_blob_is_float32():
    blob = embedding_to_bytes([0.5, -1.25, 3.0])
    assert len(blob) == 12
    assert bytes_to_embedding(blob) == [0.5, -1.25, 3.0]


# ══════════════════════════════════════════════════════════════════════════════
# DOCUMENTS AND RETRIEVAL
# ══════════════════════════════════════════════════════════════════════════════

@test_case(
    test_id="TC-RAG-001",
    priority="Critical",
    module="RAG",
    title="Documents are chunked, embedded and retrievable by similarity",
)
def test_add_document_and_find_relevant_chunks(documents, fake_openai):
    assert documents[0]["chunk_count"] == 1
    assert documents[0]["source"] == "docs"
    assert fake_openai.embedding_calls == [DOCKER_DOC[1], REACT_DOC[1]]

    chunks = get_rag_service().find_relevant_chunks("How do I deploy with docker?", top_k=1)

    assert [chunk["document_title"] for chunk in chunks] == ["Docker deploy guide"]
    assert chunks[0]["metadata"]["word_count"] == 5
    assert "embedding" not in chunks[0]


def test_find_relevant_chunks_scoped_to_document(documents):
    chunks = get_rag_service().find_relevant_chunks("deploy", document_id=documents[1]["id"])
    assert {chunk["document_id"] for chunk in chunks} == {documents[1]["id"]}


def test_hybrid_search_keyword_boost_breaks_ties(documents):
    service = get_rag_service()
    query_embedding = service.generate_embedding("docker")

    react_first = service.hybrid_search(query_embedding, ["react"], top_k=2)
    assert react_first[0]["document_title"] == "React in containers"
    assert react_first[0]["score"] == pytest.approx(react_first[0]["similarity"] + 0.1)

    docker_first = service.hybrid_search(query_embedding, ["deploy"], top_k=2)
    assert docker_first[0]["document_title"] == "Docker deploy guide"


def test_add_document_requires_content():
    with pytest.raises(Exception, match="Document content is required"):
        get_rag_service().add_document("Empty", "   ")


def test_embedding_failure_is_classified(fake_openai):
    fake_openai.embedding_error = _timeout_error()

    with pytest.raises(LLMServiceException) as exc:
        get_rag_service().add_document(*DOCKER_DOC)

    assert exc.value.status_code == 504
    assert get_rag_db().list_documents() == []


def test_delete_document_removes_chunks(documents):
    service = get_rag_service()
    service.delete_document(documents[0]["id"])

    assert [doc["title"] for doc in service.get_all_documents()] == ["React in containers"]
    assert all(chunk["document_id"] != documents[0]["id"] for chunk in get_rag_db().get_chunks())


# ══════════════════════════════════════════════════════════════════════════════
# ANSWERS
# ══════════════════════════════════════════════════════════════════════════════

@test_case(
    test_id="TC-RAG-002",
    priority="Critical",
    module="RAG",
    title="Answers cite numbered context and report token usage",
)
def test_ask_question(documents, fake_openai):
    result = get_rag_service().ask_question("How do I deploy docker?", top_k=2, previous_answer="Use compose.")

    assert result["answer"] == fake_openai.answer
    assert [source["index"] for source in result["sources"]] == [1, 2]
    assert result["sources"][0]["document"] == "Docker deploy guide"
    assert 0 < result["confidence"] <= 100
    assert result["usage"]["input_tokens"] == 120
    assert result["usage"]["output_tokens"] == 30

    prompt = fake_openai.chat_calls[0]["messages"][1]["content"]
    assert "[1] Use docker to deploy containers." in prompt
    assert "Previous answer:\nUse compose." in prompt
    assert prompt.endswith("Please provide a helpful answer based on the context above.")


def test_ask_question_without_documents(fake_openai):
    result = get_rag_service().ask_question("Anything?")

    assert result == {
        "answer": NO_CONTEXT_ANSWER,
        "sources": [],
        "confidence": 0,
        "usage": {"model": "unknown", "input_tokens": 0, "output_tokens": 0,
                  "total_tokens": 0, "estimated_cost_usd": 0.0},
    }
    assert fake_openai.chat_calls == []


def test_stream_answer_reports_usage_on_completion(documents, fake_openai):
    completed = []

    deltas = get_rag_service().stream_answer("deploy docker", on_complete=lambda a, u: completed.append((a, u)))

    assert list(deltas) == fake_openai.stream_parts
    [(answer, usage)] = completed
    assert answer == "".join(fake_openai.stream_parts)
    assert usage["total_tokens"] == 150
    assert fake_openai.chat_calls[0]["stream"] is True
    assert fake_openai.chat_calls[0]["stream_options"] == {"include_usage": True}


# ══════════════════════════════════════════════════════════════════════════════
# /rag AND /chatbot
# ══════════════════════════════════════════════════════════════════════════════

@test_case(
    test_id="TC-RAG-003",
    priority="Critical",
    module="Chat",
    title="Streaming answer is recorded in the learner's conversation",
    steps=[
        {"step": "POST /rag as a signed-in learner", "expected": "Plain-text streamed answer"},
        {"step": "Load the stored conversation", "expected": "Question and answer with token totals"},
    ]
)
def test_rag_stream_records_conversation(client, user_headers, documents, fake_openai):
    response = client.post("/rag", json={"question": "How do I deploy docker?"}, headers=user_headers)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.text == "".join(fake_openai.stream_parts)

    conversation = get_app_db().find_conversation(USER_ID, None)
    assert conversation["total_input_tokens"] == 120
    assert conversation["total_output_tokens"] == 30
    messages = get_app_db().get_conversation_messages(conversation["id"])
    assert [m["content"] for m in messages] == ["How do I deploy docker?", response.text]


def test_rag_anonymous_is_not_recorded(client, documents):
    response = client.post("/rag", json={"question": "deploy"})

    assert response.status_code == 200
    assert get_app_db().count_rows("conversations") == 0


def test_rag_validation(client):
    assert client.post("/rag", json={"question": "   "}).status_code == 400
    too_long = client.post("/rag", json={"question": "x" * 1001})
    assert too_long.status_code == 400
    assert too_long.json()["detail"] == "Question is too long"


def test_rag_llm_failure_returns_structured_error(client, documents, fake_openai):
    fake_openai.chat_error = _timeout_error()

    response = client.post("/rag", json={"question": "deploy docker"})

    assert response.status_code == 504
    body = response.json()
    assert body["success"] is False
    assert body["error_type"] == "timeout"
    assert body["user_message"] == "Request timed out, please try again"


@test_case(
    test_id="TC-RAG-004",
    priority="High",
    module="Chat",
    title="Chatbot returns rendered HTML and records lesson conversations",
)
def test_chatbot_answer_and_lesson_conversation(client, user_headers, documents):
    response = client.post(
        "/chatbot", json={"question": "deploy docker", "document_id": documents[0]["id"]}, headers=user_headers
    )

    body = response.json()
    assert response.status_code == 200
    assert body["error"] is None
    assert body["html"] == "<p>Build the image and run it with <strong>docker compose up</strong>.</p>"
    assert body["sources"][0]["document"] == "Docker deploy guide"

    conversation = client.get(f"/conversations/{documents[0]['id']}", headers=user_headers)
    assert conversation.status_code == 200
    data = conversation.json()["conversation"]
    assert data["title"] == "deploy docker"
    assert data["total_tokens"] == 150
    assert [m["role"] for m in data["messages"]] == ["user", "assistant"]


def test_conversation_not_found(client, user_headers):
    assert client.get("/conversations/lesson-404", headers=user_headers).status_code == 404


@pytest.mark.parametrize("error_factory, message", [
    (_timeout_error, "Request timed out, please try again"),
    (_auth_error, "Internal server error"),
    (_server_error, "Internal server error"),
    (_connection_error, "Network error, please check your connection"),
])
def test_chatbot_error_messages(client, documents, fake_openai, error_factory, message):
    fake_openai.chat_error = error_factory()

    response = client.post("/chatbot", json={"question": "deploy docker"})

    assert response.status_code == 200
    assert response.json() == {"answer": None, "error": message}


@pytest.mark.parametrize("payload, message", [
    ({}, "Question is required"),
    ({"question": "   "}, "Question is required"),
    ({"question": "x" * 1001}, "Question is too long"),
])
def test_chatbot_rejects_bad_questions_inline(client, fake_openai, payload, message):
    response = client.post("/chatbot", json=payload)

    assert response.status_code == 200
    assert response.json() == {"answer": None, "error": message}
    assert fake_openai.embedding_calls == []


def test_chatbot_honeypot(client, fake_openai):
    response = client.post("/chatbot", json={"question": "hi", "name__confirm": "filled"})
    assert response.status_code == 400
    assert fake_openai.embedding_calls == []


# ══════════════════════════════════════════════════════════════════════════════
# ADMIN DOCUMENTS
# ══════════════════════════════════════════════════════════════════════════════

@test_case(
    test_id="TC-RAG-005",
    priority="High",
    module="RAG",
    title="Admins manage the document library",
)
def test_admin_document_lifecycle(client, admin_headers, user_headers):
    payload = {"title": "Python testing", "content": "Use pytest for python testing.", "source": "handbook"}

    assert client.post("/admin/documents", json=payload, headers=user_headers).status_code == 403

    created = client.post("/admin/documents", json=payload, headers=admin_headers)
    assert created.status_code == 201
    document_id = created.json()["document"]["id"]

    listing = client.get("/admin/documents", headers=admin_headers).json()
    assert listing["total"] == 1
    assert listing["documents"][0]["chunk_count"] == 1

    search = client.post("/admin/documents/search", json={"query": "python testing"}, headers=admin_headers)
    [result] = search.json()["results"]
    assert result["document"] == "Python testing"
    assert result["score"] == pytest.approx(result["similarity"] + 0.2, abs=0.002)

    assert client.delete(f"/admin/documents/{document_id}", headers=admin_headers).json()["deleted"] is True
    assert client.delete(f"/admin/documents/{document_id}", headers=admin_headers).status_code == 404


def test_admin_document_rejects_blank_title(client, admin_headers):
    response = client.post("/admin/documents", json={"title": " ", "content": "text"}, headers=admin_headers)
    assert response.status_code == 422
