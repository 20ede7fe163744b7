# api/chat_routes.py
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, field_validator
from typing import Optional

from tekbreed.api.dependencies import check_honeypot
from tekbreed.database.app_db import get_app_db
from tekbreed.middleware.jwt_middleware import get_current_user, get_optional_user, user_id_from_claims
from tekbreed.middleware.rbac import require_admin
from tekbreed.services.rag_service import get_rag_service
from tekbreed.utils.audit_logger import get_audit_logger
from tekbreed.utils.errors import TekBreedError, to_http_exception
from tekbreed.utils.llm_error_handler import LLMServiceException, LLMErrorType
from tekbreed.utils.markdown_converter import to_html

chat_router = APIRouter(tags=['chat'])
documents_router = APIRouter(prefix='/admin/documents', tags=['admin'])

MAX_QUESTION_LENGTH = 1000
MAX_DOCUMENT_LENGTH = 500_000

INTERNAL_ERROR_MESSAGE = "Internal server error"

# Failures whose user-facing message is shown as-is in the chatbot
CHATBOT_VISIBLE_ERRORS = (
    LLMErrorType.RATE_LIMIT,
    LLMErrorType.TIMEOUT,
    LLMErrorType.SERVICE_UNAVAILABLE,
)


# Request models with validation
class RagRequest(BaseModel):
    question: str = ""
    document_id: Optional[str] = None


class ChatbotRequest(BaseModel):
    question: str = ""
    document_id: Optional[str] = None
    previous_answer: Optional[str] = None
    name__confirm: Optional[str] = None


class AddDocumentRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1, max_length=MAX_DOCUMENT_LENGTH)
    source: Optional[str] = Field(None, max_length=500)

    @field_validator('title', 'content')
    @classmethod
    def validate_not_blank(cls, v):
        if not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()


class SearchDocumentsRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=MAX_QUESTION_LENGTH)
    top_k: int = Field(5, ge=1, le=20)
    document_id: Optional[str] = None


def _question_problem(question: str) -> Optional[str]:
    if not question:
        return "Question is required"
    if len(question) > MAX_QUESTION_LENGTH:
        return "Question is too long"
    return None


def _record_for_user(user_id: Optional[str], document_id: Optional[str], question: str):
    """Build an on_complete callback that stores the exchange in the user's lesson conversation."""
    if not user_id:
        return None

    def on_complete(answer: str, usage: dict):
        try:
            service = get_rag_service()
            conversation = service.get_or_create_conversation(user_id, document_id, title=question[:100])
            service.record_exchange(conversation["id"], user_id, question, answer, usage)
        except Exception as e:
            get_audit_logger().log_error("ChatRoutes", "Failed to record conversation", {"error": str(e)})

    return on_complete


@chat_router.post('/rag')
def rag_answer(request: RagRequest, current_user: Optional[dict] = Depends(get_optional_user)):
    """Stream an answer grounded in the stored documents as plain text."""
    question = request.question.strip()
    problem = _question_problem(question)
    if problem:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=problem)

    user_id = user_id_from_claims(current_user)
    if user_id:
        get_app_db().upsert_user(user_id, current_user.get("email"), current_user.get("name"))

    try:
        deltas = get_rag_service().stream_answer(
            question,
            document_id=request.document_id,
            on_complete=_record_for_user(user_id, request.document_id, question)
        )
    except LLMServiceException as llm_ex:
        print(f"🔴 LLM Error in RAG stream: {llm_ex}")
        return JSONResponse(
            status_code=llm_ex.status_code,
            content={'success': False, **llm_ex.to_dict()}
        )
    except Exception as e:
        print(f"[ChatRoutes] RAG error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=INTERNAL_ERROR_MESSAGE)

    return StreamingResponse(
        deltas,
        media_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"}
    )


@chat_router.post('/chatbot')
def chatbot(request: ChatbotRequest, current_user: Optional[dict] = Depends(get_optional_user)):
    """
    Lesson chatbot. Always answers 200 with {answer, error}; failures carry a
    short message the widget can show inline.
    """
    check_honeypot(request.name__confirm)

    question = request.question.strip()
    problem = _question_problem(question)
    if problem:
        return {'answer': None, 'error': problem}

    try:
        response = get_rag_service().ask_question(
            question,
            document_id=request.document_id,
            previous_answer=request.previous_answer
        )
    except LLMServiceException as llm_ex:
        error_type = llm_ex.llm_error.error_type
        message = llm_ex.user_message if error_type in CHATBOT_VISIBLE_ERRORS else INTERNAL_ERROR_MESSAGE
        return {'answer': None, 'error': message}
    except Exception as e:
        print(f"[ChatRoutes] Chatbot error: {e}")
        return {'answer': None, 'error': INTERNAL_ERROR_MESSAGE}

    if not response.get("answer"):
        return {'answer': None, 'error': "An error occurred, please try again"}

    user_id = user_id_from_claims(current_user)
    if user_id:
        get_app_db().upsert_user(user_id, current_user.get("email"), current_user.get("name"))
        _record_for_user(user_id, request.document_id, question)(response["answer"], response["usage"])

    return {
        'answer': response["answer"],
        'html': to_html(response["answer"]),
        'sources': response["sources"],
        'confidence': response["confidence"],
        'error': None,
    }


@chat_router.get('/conversations/{lesson_id}')
async def get_lesson_conversation(lesson_id: str, current_user: dict = Depends(get_current_user)):
    try:
        conversation = get_rag_service().get_lesson_conversation(user_id_from_claims(current_user), lesson_id)
        if not conversation:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
        return {'success': True, 'conversation': conversation}
    except HTTPException:
        raise
    except Exception as e:
        print(f"[ChatRoutes] Error loading conversation: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


# =============================================================================
# Document management (admin)
# =============================================================================

@documents_router.post('', status_code=status.HTTP_201_CREATED)
def add_document(request: AddDocumentRequest, current_user: dict = Depends(require_admin)):
    """Chunk, embed and store a document for retrieval."""
    try:
        document = get_rag_service().add_document(request.title, request.content, request.source)
        return {'success': True, 'document': document}
    except LLMServiceException as llm_ex:
        return JSONResponse(status_code=llm_ex.status_code, content={'success': False, **llm_ex.to_dict()})
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        print(f"[ChatRoutes] Error adding document: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@documents_router.get('')
async def list_documents(current_user: dict = Depends(require_admin)):
    try:
        documents = get_rag_service().get_all_documents()
        return {'success': True, 'documents': documents, 'total': len(documents)}
    except Exception as e:
        print(f"[ChatRoutes] Error listing documents: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@documents_router.delete('/{document_id}')
async def delete_document(document_id: str, current_user: dict = Depends(require_admin)):
    try:
        return {'success': True, **get_rag_service().delete_document(document_id)}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        print(f"[ChatRoutes] Error deleting document: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


@documents_router.post('/search')
def search_documents(request: SearchDocumentsRequest, current_user: dict = Depends(require_admin)):
    """Hybrid retrieval preview: embedding similarity boosted by keyword hits."""
    try:
        service = get_rag_service()
        keywords = [word for word in request.query.lower().split() if len(word) > 2]
        results = service.hybrid_search(
            service.generate_embedding(request.query),
            keywords,
            top_k=request.top_k,
            document_id=request.document_id
        )
        return {
            'success': True,
            'results': [
                {
                    'document': chunk["document_title"],
                    'content': chunk["content"],
                    'similarity': round(chunk["similarity"], 3),
                    'score': round(chunk["score"], 3),
                }
                for chunk in results
            ],
        }
    except LLMServiceException as llm_ex:
        return JSONResponse(status_code=llm_ex.status_code, content={'success': False, **llm_ex.to_dict()})
    except Exception as e:
        print(f"[ChatRoutes] Error searching documents: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
