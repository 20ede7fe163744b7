"""
CMS Client - read-only GROQ queries against the Sanity HTTP API.

Articles, tutorials, FAQs and changelogs are authored in Sanity; this
service only reads them, mostly to resolve a slug to its document id.
"""

import json
import httpx
from typing import Optional, Dict, Any, List

from tekbreed.config import Config
from tekbreed.utils.errors import ExternalServiceError

ARTICLE_QUERY = """*[_type == "article" && slug.current == $slug][0]{
  "id": _id, title, "slug": slug.current, excerpt, "createdAt": _createdAt
}"""

TUTORIAL_QUERY = """*[_type == "tutorial" && slug.current == $slug][0]{
  "id": _id, title, "slug": slug.current, overview, "createdAt": _createdAt
}"""

ARTICLES_QUERY = """*[_type == "article" && published == true] | order(_createdAt desc){
  "id": _id, title, "slug": slug.current, excerpt, "createdAt": _createdAt
}"""

TUTORIALS_QUERY = """*[_type == "tutorial" && published == true] | order(_createdAt desc){
  "id": _id, title, "slug": slug.current, overview, "createdAt": _createdAt
}"""

FAQS_QUERY = """*[_type == "faq"]{ "id": _id, question, answer, order }"""

CHANGELOGS_QUERY = """*[_type == "changelog"] | order(_createdAt desc){
  "id": _id, title, version, content, "createdAt": _createdAt
}"""


class CMSClient:
    def __init__(
        self,
        project_id: str = None,
        dataset: str = None,
        api_version: str = None,
        token: str = None,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None
    ):
        self.project_id = project_id or Config.SANITY_PROJECT_ID
        self.dataset = dataset or Config.SANITY_DATASET
        self.api_version = api_version or Config.SANITY_API_VERSION
        self.token = token or Config.SANITY_TOKEN
        self.timeout = timeout
        self.transport = transport

    @property
    def query_url(self) -> str:
        return f"https://{self.project_id}.api.sanity.io/v{self.api_version}/data/query/{self.dataset}"

    def fetch(self, query: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """Run a GROQ query and return its `result`."""
        if not self.project_id:
            raise ExternalServiceError("Sanity", "SANITY_PROJECT_ID is not configured")

        query_params = {"query": query}
        for name, value in (params or {}).items():
            query_params[f"${name}"] = json.dumps(value)

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.get(self.query_url, params=query_params, headers=headers)
        except httpx.RequestError as e:
            raise ExternalServiceError("Sanity", f"Request failed: {e}")

        if response.status_code >= 400:
            raise ExternalServiceError(
                "Sanity",
                f"Query returned {response.status_code}: {response.text[:200]}",
                upstream_status=response.status_code
            )
        return response.json().get("result")

    def get_article(self, slug: str) -> Optional[Dict[str, Any]]:
        return self.fetch(ARTICLE_QUERY, {"slug": slug})

    def get_tutorial(self, slug: str) -> Optional[Dict[str, Any]]:
        return self.fetch(TUTORIAL_QUERY, {"slug": slug})

    def list_articles(self) -> List[Dict[str, Any]]:
        return self.fetch(ARTICLES_QUERY) or []

    def list_tutorials(self) -> List[Dict[str, Any]]:
        return self.fetch(TUTORIALS_QUERY) or []

    def get_faqs(self) -> List[Dict[str, Any]]:
        faqs = self.fetch(FAQS_QUERY) or []
        return sorted(faqs, key=lambda faq: faq.get("order") or 0)

    def get_changelogs(self) -> List[Dict[str, Any]]:
        return self.fetch(CHANGELOGS_QUERY) or []


# Singleton instance
_cms_client = None


def get_cms_client() -> CMSClient:
    global _cms_client
    if _cms_client is None:
        _cms_client = CMSClient()
    return _cms_client
