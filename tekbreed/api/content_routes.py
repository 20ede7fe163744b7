# api/content_routes.py
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List

from tekbreed.api.dependencies import get_registered_user
from tekbreed.middleware.jwt_middleware import get_optional_user, user_id_from_claims
from tekbreed.services.cms_client import get_cms_client
from tekbreed.services.content_service import get_content_service, FLAG_INTENTS
from tekbreed.utils.errors import TekBreedError, to_http_exception

content_router = APIRouter(prefix='/content', tags=['content'])

MAX_COMMENT_LENGTH = 10000
MAX_REPORT_DETAILS_LENGTH = 1000


def _server_error(action: str, e: Exception) -> HTTPException:
    print(f"[ContentRoutes] Error {action}: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=str(e)
    )


# Request models with validation
class CommentRequest(BaseModel):
    body: str = Field(..., max_length=MAX_COMMENT_LENGTH)

    @field_validator('body')
    @classmethod
    def validate_body(cls, v):
        if not v or not v.strip():
            raise ValueError("Comment body cannot be empty")
        return v.strip()


class FlagRequest(BaseModel):
    intent: str
    item_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=200)
    details: Optional[str] = Field(None, max_length=MAX_REPORT_DETAILS_LENGTH)

    @field_validator('intent')
    @classmethod
    def validate_intent(cls, v):
        if v not in FLAG_INTENTS:
            raise ValueError(f"intent must be one of: {', '.join(FLAG_INTENTS)}")
        return v


class BookmarkRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)
    tags: List[str] = Field(default_factory=list)

    @field_validator('tags')
    @classmethod
    def validate_tags(cls, v):
        return [tag.strip() for tag in v if tag and tag.strip()]


class TagRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    color: Optional[str] = Field(None, pattern=r'^#[0-9A-Fa-f]{6}$')


# =============================================================================
# CMS lookups
# =============================================================================

@content_router.get('/articles')
async def list_articles():
    try:
        return {'success': True, 'articles': get_cms_client().list_articles()}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("listing articles", e)


@content_router.get('/tutorials')
async def list_tutorials():
    try:
        return {'success': True, 'tutorials': get_cms_client().list_tutorials()}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("listing tutorials", e)


@content_router.get('/faqs')
async def list_faqs():
    try:
        return {'success': True, 'faqs': get_cms_client().get_faqs()}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("listing FAQs", e)


@content_router.get('/changelogs')
async def list_changelogs():
    try:
        return {'success': True, 'changelogs': get_cms_client().get_changelogs()}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("listing changelogs", e)


# =============================================================================
# Tags
# =============================================================================

@content_router.get('/tags')
async def list_tags(current_user: dict = Depends(get_registered_user)):
    try:
        tags = get_content_service().list_tags(user_id_from_claims(current_user))
        return {'success': True, 'tags': tags}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("listing tags", e)


@content_router.post('/tags', status_code=status.HTTP_201_CREATED)
async def create_tag(request: TagRequest, current_user: dict = Depends(get_registered_user)):
    try:
        tag = get_content_service().create_tag(user_id_from_claims(current_user), request.name, request.color)
        return {'success': True, 'tag': tag}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("creating tag", e)


@content_router.delete('/tags/{tag_id}')
async def delete_tag(tag_id: str, current_user: dict = Depends(get_registered_user)):
    try:
        return get_content_service().delete_tag(current_user, tag_id)
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("deleting tag", e)


# =============================================================================
# Flags and bookmarks
# =============================================================================

@content_router.post('/flags', status_code=status.HTTP_201_CREATED)
async def flag_content(request: FlagRequest, current_user: dict = Depends(get_registered_user)):
    """Report an article, tutorial, comment or reply for moderation."""
    try:
        report = get_content_service().flag_content(
            intent=request.intent,
            item_id=request.item_id,
            user_id=user_id_from_claims(current_user),
            reason=request.reason,
            details=request.details
        )
        return {'success': True, 'report': report}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("flagging content", e)


@content_router.patch('/bookmarks/{bookmark_id}')
async def update_bookmark(
    bookmark_id: str,
    request: BookmarkRequest,
    current_user: dict = Depends(get_registered_user)
):
    try:
        result = get_content_service().update_bookmark(
            bookmark_id, user_id_from_claims(current_user), request.notes, request.tags
        )
        return {'success': True, **result}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("updating bookmark", e)


# =============================================================================
# Comments and replies
# =============================================================================

@content_router.patch('/comments/{comment_id}')
async def update_comment(
    comment_id: str,
    request: CommentRequest,
    current_user: dict = Depends(get_registered_user)
):
    try:
        result = get_content_service().update_comment(current_user, comment_id, request.body)
        return {'success': True, **result}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("updating comment", e)


@content_router.delete('/comments/{comment_id}')
async def delete_comment(comment_id: str, current_user: dict = Depends(get_registered_user)):
    try:
        return get_content_service().delete_comment(current_user, comment_id)
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("deleting comment", e)


@content_router.post('/comments/{comment_id}/upvote')
async def upvote_comment(comment_id: str, current_user: dict = Depends(get_registered_user)):
    try:
        like = get_content_service().upvote_comment(comment_id, user_id_from_claims(current_user))
        return {'success': True, 'like': like}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("upvoting comment", e)


@content_router.patch('/replies/{reply_id}')
async def update_reply(
    reply_id: str,
    request: CommentRequest,
    current_user: dict = Depends(get_registered_user)
):
    try:
        result = get_content_service().update_reply(current_user, reply_id, request.body)
        return {'success': True, **result}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("updating reply", e)


@content_router.delete('/replies/{reply_id}')
async def delete_reply(reply_id: str, current_user: dict = Depends(get_registered_user)):
    try:
        return get_content_service().delete_reply(current_user, reply_id)
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("deleting reply", e)


@content_router.post('/replies/{reply_id}/upvote')
async def upvote_reply(reply_id: str, current_user: dict = Depends(get_registered_user)):
    try:
        like = get_content_service().upvote_reply(reply_id, user_id_from_claims(current_user))
        return {'success': True, 'like': like}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("upvoting reply", e)


# =============================================================================
# Per-item endpoints: /content/{content_type}/{item_id}/...
# =============================================================================

@content_router.get('/{content_type}/{slug}')
async def get_content_by_slug(content_type: str, slug: str):
    """Resolve an article or tutorial slug through the CMS and attach local metrics."""
    try:
        cms = get_cms_client()
        kind = content_type.lower()
        if kind == "article":
            document = cms.get_article(slug)
        elif kind == "tutorial":
            document = cms.get_tutorial(slug)
        else:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Slug lookup is not supported for {content_type}"
            )

        if not document:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"{kind.capitalize()} not found"
            )

        metrics = get_content_service().get_content_metrics(document["id"], kind)
        return {'success': True, 'content': document, 'metrics': metrics}

    except HTTPException:
        raise
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("resolving content", e)


@content_router.post('/{content_type}/{item_id}/views')
async def track_page_view(content_type: str, item_id: str):
    try:
        result = get_content_service().track_page_view(item_id, content_type)
        return {'success': True, **result}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("tracking page view", e)


@content_router.get('/{content_type}/{item_id}/metrics')
async def get_content_metrics(content_type: str, item_id: str):
    try:
        metrics = get_content_service().get_content_metrics(item_id, content_type)
        return {'success': True, 'metrics': metrics}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("loading metrics", e)


@content_router.get('/{content_type}/{item_id}/comments')
async def get_comments(
    content_type: str,
    item_id: str,
    comment_take: int = Query(10, ge=1, le=100),
    reply_take: int = Query(5, ge=0, le=50),
    current_user: Optional[dict] = Depends(get_optional_user)
):
    try:
        comments = get_content_service().get_comments(item_id, content_type, comment_take, reply_take)
        return {
            'success': True,
            'comments': comments,
            'viewer_id': user_id_from_claims(current_user),
        }
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("loading comments", e)


@content_router.post('/{content_type}/{item_id}/comments', status_code=status.HTTP_201_CREATED)
async def add_comment(
    content_type: str,
    item_id: str,
    request: CommentRequest,
    current_user: dict = Depends(get_registered_user)
):
    try:
        comment = get_content_service().add_comment(
            item_id, request.body, user_id_from_claims(current_user), content_type
        )
        return {'success': True, 'comment': comment}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("adding comment", e)


@content_router.post('/{content_type}/{item_id}/comments/{parent_id}/replies', status_code=status.HTTP_201_CREATED)
async def add_reply(
    content_type: str,
    item_id: str,
    parent_id: str,
    request: CommentRequest,
    current_user: dict = Depends(get_registered_user)
):
    try:
        reply = get_content_service().add_reply(
            item_id, request.body, user_id_from_claims(current_user), parent_id, content_type
        )
        return {'success': True, 'reply': reply}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("adding reply", e)


@content_router.post('/{content_type}/{item_id}/upvote')
async def upvote_content(content_type: str, item_id: str, current_user: dict = Depends(get_registered_user)):
    try:
        like = get_content_service().upvote_content(item_id, user_id_from_claims(current_user), content_type)
        return {'success': True, 'like': like}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("upvoting content", e)


@content_router.post('/{content_type}/{item_id}/bookmark')
async def toggle_bookmark(
    content_type: str,
    item_id: str,
    request: BookmarkRequest,
    current_user: dict = Depends(get_registered_user)
):
    try:
        result = get_content_service().toggle_bookmark(
            item_id, content_type, user_id_from_claims(current_user), request.notes, request.tags
        )
        return {'success': True, **result}
    except TekBreedError as e:
        raise to_http_exception(e)
    except Exception as e:
        raise _server_error("toggling bookmark", e)
