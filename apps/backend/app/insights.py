"""
Question answering over stored extraction results.

The most recent results (or a single job's result) are serialized into the
prompt as context and the completion service answers in plain text.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from app.ai_service import CompletionService
from core.errors import JobNotFound, PersistenceFailure
from pipeline.models import ExtractionResult, Insight
from pipeline.store import JobStore

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_LIMIT = 10
MAX_CONTEXT_CHARS = 40000

INSIGHTS_SYSTEM_PROMPT = (
    "You are an analyst answering questions about data extracted from web pages. "
    "Answer only from the DATA provided. If the data does not contain the answer, say so."
)


def build_context(results: List[ExtractionResult], max_chars: int = MAX_CONTEXT_CHARS) -> str:
    """Serialize results for the prompt; an empty ledger is stated explicitly."""
    if not results:
        return "DATA: none (no extraction results stored yet)."
    records = [
        {
            "job_id": r.job_id,
            "created_at": r.created_at.isoformat(),
            "content": r.content,
        }
        for r in results
    ]
    payload = json.dumps(records, default=str)
    if len(payload) > max_chars:
        logger.warning(f"[insights] Context truncated from {len(payload)} to {max_chars} chars")
        payload = payload[:max_chars]
    return f"DATA: {payload}"


class InsightService:
    def __init__(self, store: JobStore, service: CompletionService, context_limit: int = DEFAULT_CONTEXT_LIMIT):
        self.store = store
        self.service = service
        self.context_limit = context_limit

    async def answer(self, query: str, job_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Answer a question over stored results.

        Answers scoped to a job are kept in the store (see list_insights). A
        failed write is logged and leaves insight_id empty; the answer is still
        returned.

        Args:
            query: Natural-language question
            job_id: Restrict the context to one job's result

        Returns:
            {response, job_id, records, insight_id}

        Raises:
            JobNotFound: job_id given but unknown
            InferenceFailure: the completion service failed
            PersistenceFailure: results could not be read
        """
        if job_id:
            if await self.store.get_job(job_id) is None:
                raise JobNotFound(job_id)
            results = await self.store.list_results(job_id=job_id)
        else:
            results = await self.store.list_results(limit=self.context_limit)

        prompt = f"{build_context(results)}\n\nQUESTION: {query.strip()}"
        response = await self.service.complete(prompt, system_prompt=INSIGHTS_SYSTEM_PROMPT)
        response = response.strip()
        logger.info(f"[insights] Answered query over {len(results)} record(s)")

        insight_id = None
        if job_id:
            insight_id = await self._save(job_id, results, query.strip(), response)
        return {
            "response": response,
            "job_id": job_id,
            "records": len(results),
            "insight_id": insight_id,
        }

    async def _save(self, job_id: str, results: List[ExtractionResult], query: str, response: str) -> Optional[str]:
        insight = Insight(
            job_id=job_id,
            data_id=results[0].id if results else None,
            query=query,
            insight_text=response,
        )
        try:
            saved = await self.store.write_insight(insight)
        except (PersistenceFailure, JobNotFound) as e:
            logger.error(f"[insights] Could not save answer for job {job_id}: {e}")
            return None
        return saved.id
