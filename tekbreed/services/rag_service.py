# services/rag_service.py
"""
RAG Service - retrieval-augmented answers for the learning assistant.

Documents are split into overlapping chunks, embedded with OpenAI and
stored as float32 blobs. Questions are embedded, scored against every
chunk with cosine similarity, and answered from the top matches.
"""
import math
import struct
import time
from typing import List, Dict, Optional, Any, Callable, Iterator

import openai

from tekbreed.config import Config
from tekbreed.database.app_db import get_app_db
from tekbreed.database.rag_db import get_rag_db
from tekbreed.utils.llm_error_handler import handle_llm_error, LLMServiceException
from tekbreed.utils.token_tracker import TokenTracker, extract_token_usage, empty_usage
from tekbreed.utils.errors import invariant, NotFoundError

NO_CONTEXT_ANSWER = "I couldn't find any relevant information to answer your question."

SYSTEM_PROMPT = """You are a helpful assistant that answers questions based on provided context.
Rules:
 1. Only answer based on the context provided
 2. If you can't find the answer in the context, say so clearly
 3. Reference the context sections [1], [2], etc. when relevant
 4. Be concise but thorough
 5. If the context is insufficient, ask for clarification"""

KEYWORD_BOOST = 0.1


def chunk_text(text: str, max_chunk_size: int = 800, overlap: int = 100) -> List[str]:
    """
    Split text into overlapping chunks.

    A window is cut after its last sentence end or newline when that
    in-window offset lies past `start + max_chunk_size / 2`; every other
    window is taken whole and the next one starts `overlap` characters back.
    """
    if not text:
        return []

    chunks = []
    start = 0
    length = len(text)

    while start < length:
        end = min(start + max_chunk_size, length)
        chunk = text[start:end]

        if end < length:
            last_break = max(chunk.rfind("."), chunk.rfind("\n"))
            if last_break > start + max_chunk_size * 0.5:
                chunk = text[start:start + last_break + 1]
                start = start + last_break + 1
            else:
                start = end - overlap
        else:
            start = end

        chunks.append(chunk.strip())

    return [chunk for chunk in chunks if chunk]


def cosine_similarity(vec_a: List[float], vec_b: List[float]) -> float:
    if len(vec_a) != len(vec_b):
        raise ValueError("Vectors must have the same length")

    dot_product = sum(a * b for a, b in zip(vec_a, vec_b))
    magnitude_a = math.sqrt(sum(a * a for a in vec_a))
    magnitude_b = math.sqrt(sum(b * b for b in vec_b))

    if magnitude_a == 0 or magnitude_b == 0:
        return 0.0
    return dot_product / (magnitude_a * magnitude_b)


def embedding_to_bytes(embedding: List[float]) -> bytes:
    return struct.pack(f"<{len(embedding)}f", *embedding)


def bytes_to_embedding(data: bytes) -> List[float]:
    return list(struct.unpack(f"<{len(data) // 4}f", data))


class RagService:
    def __init__(self, client=None, embedding_delay: float = 0.1):
        self._client = client
        self.embedding_delay = embedding_delay

    @property
    def client(self):
        """Lazy-load the OpenAI client so the app boots without an API key."""
        if self._client is None:
            if not Config.OPENAI_API_KEY:
                raise ValueError("OPENAI_API_KEY environment variable is not set")
            self._client = openai.OpenAI(api_key=Config.OPENAI_API_KEY, timeout=Config.OPENAI_TIMEOUT)
        return self._client

    @property
    def rag_db(self):
        return get_rag_db()

    @property
    def app_db(self):
        return get_app_db()

    # =========================================================================
    # OpenAI calls
    # =========================================================================

    def generate_embedding(self, text: str) -> List[float]:
        try:
            response = self.client.embeddings.create(
                model=Config.EMBEDDING_MODEL,
                input=text,
                encoding_format="float"
            )
        except Exception as e:
            raise LLMServiceException(handle_llm_error(e, context="RAG - Embedding"))
        return response.data[0].embedding

    def _messages(self, system_prompt: str, user_prompt: str) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]

    def generate_chat_completion(self, system_prompt: str, user_prompt: str):
        """Returns (answer text, token usage dict)."""
        try:
            response = self.client.chat.completions.create(
                model=Config.CHAT_MODEL,
                messages=self._messages(system_prompt, user_prompt),
                max_completion_tokens=Config.MAX_TOKENS,
                temperature=Config.TEMPERATURE
            )
        except Exception as e:
            raise LLMServiceException(handle_llm_error(e, context="RAG - Answer Generation"))
        return response.choices[0].message.content, extract_token_usage(response)

    # =========================================================================
    # Documents
    # =========================================================================

    def add_document(self, title: str, content: str, source: Optional[str] = None) -> Dict[str, Any]:
        invariant(title and title.strip(), "Document title is required")
        invariant(content and content.strip(), "Document content is required")
        print(f"[RAG] Processing document: {title}")

        chunks = chunk_text(content, 800, 100)
        print(f"[RAG] Created {len(chunks)} chunks")

        chunk_rows = []
        for index, chunk in enumerate(chunks):
            embedding = self.generate_embedding(chunk)
            chunk_rows.append({
                "content": chunk,
                "chunk_index": index,
                "chunk_type": "text",
                "embedding": embedding_to_bytes(embedding),
                "metadata": {
                    "length": len(chunk),
                    "word_count": len(chunk.split(" ")),
                    "preview": chunk[:100] + "...",
                },
            })
            # Space out embedding calls to stay under the rate limit
            if self.embedding_delay and index < len(chunks) - 1:
                time.sleep(self.embedding_delay)

        document = self.rag_db.save_document(title, content, chunk_rows, source)
        print(f"[RAG] Document stored with ID: {document['id']}")
        return {**document, "chunk_count": len(chunk_rows)}

    def get_all_documents(self) -> List[Dict[str, Any]]:
        return self.rag_db.list_documents()

    def delete_document(self, document_id: str) -> Dict[str, Any]:
        if not self.rag_db.delete_document(document_id):
            raise NotFoundError("Document not found")
        return {"id": document_id, "deleted": True}

    # =========================================================================
    # Retrieval
    # =========================================================================

    def _score_chunks(self, query_embedding: List[float], document_id: Optional[str]) -> List[Dict[str, Any]]:
        scored = []
        for chunk in self.rag_db.get_chunks(document_id):
            embedding = bytes_to_embedding(chunk.pop("embedding"))
            chunk["similarity"] = cosine_similarity(query_embedding, embedding)
            scored.append(chunk)
        scored.sort(key=lambda c: c["similarity"], reverse=True)
        return scored

    def find_relevant_chunks(self, query: str, top_k: int = 5, document_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query_embedding = self.generate_embedding(query)
        top_chunks = self._score_chunks(query_embedding, document_id)[:top_k]
        similarities = ", ".join(f"{c['similarity']:.3f}" for c in top_chunks)
        print(f"[RAG] Top similarities: {similarities}")
        return top_chunks

    def hybrid_search(
        self,
        query_embedding: List[float],
        keywords: List[str],
        top_k: int = 5,
        document_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Semantic top 2k, boosted by keyword hits, re-ranked to top k."""
        candidates = self._score_chunks(query_embedding, document_id)[:top_k * 2]
        lowered = [k.lower() for k in keywords if k]

        for chunk in candidates:
            text = chunk["content"].lower()
            matches = sum(1 for keyword in lowered if keyword in text)
            chunk["score"] = chunk["similarity"] + matches * KEYWORD_BOOST

        candidates.sort(key=lambda c: c["score"], reverse=True)
        return candidates[:top_k]

    # =========================================================================
    # Question answering
    # =========================================================================

    def _build_user_prompt(self, question: str, chunks: List[Dict[str, Any]], previous_answer: Optional[str]) -> str:
        context = "\n\n".join(f"[{i + 1}] {chunk['content']}" for i, chunk in enumerate(chunks))
        prompt = f"Context:\n{context}\n\n"
        if previous_answer:
            prompt += f"Previous answer:\n{previous_answer}\n\n"
        prompt += f"Question: {question}\n\nPlease provide a helpful answer based on the context above."
        return prompt

    def _sources(self, chunks: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            {
                "index": i + 1,
                "document": chunk["document_title"],
                "similarity": round(chunk["similarity"], 3),
                "content": chunk["content"][:200] + "...",
                "metadata": chunk["metadata"],
            }
            for i, chunk in enumerate(chunks)
        ]

    def ask_question(
        self,
        question: str,
        top_k: int = 5,
        document_id: Optional[str] = None,
        previous_answer: Optional[str] = None
    ) -> Dict[str, Any]:
        print(f"[RAG] Processing question: \"{question[:80]}\"")
        chunks = self.find_relevant_chunks(question, top_k, document_id)

        if not chunks:
            return {"answer": NO_CONTEXT_ANSWER, "sources": [], "confidence": 0, "usage": empty_usage()}

        answer, usage = self.generate_chat_completion(
            SYSTEM_PROMPT,
            self._build_user_prompt(question, chunks, previous_answer)
        )

        avg_similarity = sum(c["similarity"] for c in chunks) / len(chunks)
        return {
            "answer": answer,
            "sources": self._sources(chunks),
            "confidence": round(min(avg_similarity * 100, 100), 1),
            "usage": usage,
        }

    def stream_answer(
        self,
        question: str,
        top_k: int = 5,
        document_id: Optional[str] = None,
        previous_answer: Optional[str] = None,
        on_complete: Optional[Callable[[str, Dict[str, Any]], None]] = None
    ) -> Iterator[str]:
        """
        Retrieve context and open the completion stream eagerly, so failures
        surface before any bytes are sent. Returns an iterator of text deltas.
        """
        chunks = self.find_relevant_chunks(question, top_k, document_id)

        if not chunks:
            def fallback():
                yield NO_CONTEXT_ANSWER
                if on_complete:
                    on_complete(NO_CONTEXT_ANSWER, empty_usage())
            return fallback()

        try:
            stream = self.client.chat.completions.create(
                model=Config.CHAT_MODEL,
                messages=self._messages(SYSTEM_PROMPT, self._build_user_prompt(question, chunks, previous_answer)),
                max_completion_tokens=Config.MAX_TOKENS,
                temperature=Config.TEMPERATURE,
                stream=True,
                stream_options={"include_usage": True}
            )
        except Exception as e:
            raise LLMServiceException(handle_llm_error(e, context="RAG - Streaming Answer"))

        def deltas():
            parts = []
            tracker = TokenTracker()
            for chunk in stream:
                if getattr(chunk, "usage", None):
                    tracker.track(chunk)
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content or ""
                if content:
                    parts.append(content)
                    yield content
            if on_complete:
                summary = tracker.get_summary()
                on_complete("".join(parts), {
                    "model": Config.CHAT_MODEL,
                    "input_tokens": summary["input_tokens"],
                    "output_tokens": summary["output_tokens"],
                    "total_tokens": summary["total_tokens"],
                    "estimated_cost_usd": summary["estimated_cost_usd"],
                })

        return deltas()

    # =========================================================================
    # Conversations
    # =========================================================================

    def get_or_create_conversation(self, user_id: str, document_id: Optional[str] = None, title: Optional[str] = None) -> Dict[str, Any]:
        conversation = self.app_db.find_conversation(user_id, document_id)
        if conversation:
            return conversation
        return self.app_db.create_conversation(user_id, document_id, title)

    def record_exchange(
        self,
        conversation_id: str,
        user_id: str,
        question: str,
        answer: str,
        usage: Optional[Dict[str, Any]] = None
    ) -> None:
        usage = usage or empty_usage()
        self.app_db.record_exchange(
            conversation_id,
            user_id,
            question,
            answer,
            input_tokens=usage.get("input_tokens", 0),
            output_tokens=usage.get("output_tokens", 0)
        )

    def get_lesson_conversation(self, user_id: str, lesson_id: str) -> Optional[Dict[str, Any]]:
        conversation = self.app_db.find_conversation(user_id, lesson_id)
        if not conversation:
            return None
        return {
            "id": conversation["id"],
            "title": conversation["title"],
            "created_at": conversation["created_at"],
            "total_tokens": conversation["total_tokens"],
            "messages": self.app_db.get_conversation_messages(conversation["id"]),
        }


# Singleton instance
_rag_service = None


def get_rag_service() -> RagService:
    global _rag_service
    if _rag_service is None:
        _rag_service = RagService()
    return _rag_service
