"""Answer synthesis: grounded prompt -> one model call -> validated citations."""

from __future__ import annotations

import time
from typing import Optional, Sequence

from loguru import logger

from ragserve.citations import validate_citations
from ragserve.errors import AnswerGenerationFailed, RAGError
from ragserve.llm_client import LanguageModel
from ragserve.logging_config import log_llm_call
from ragserve.models import AnswerResult, RetrievedPassage
from ragserve.prompt import NOT_ENOUGH_INFORMATION, RAGPrompt, estimate_tokens


class AnswerSynthesizer:
    """
    Turns a query plus ordered passages into an ``AnswerResult``.

    Makes at most one model call per query and none at all when there are
    no passages. Token counts on the result are estimates for the caller's
    usage accounting.
    """

    def __init__(self, llm: LanguageModel, prompt: type = RAGPrompt):
        self.llm = llm
        self.prompt = prompt

    async def synthesize(
        self,
        query: str,
        passages: Sequence[RetrievedPassage],
        request_id: Optional[str] = None,
    ) -> AnswerResult:
        if not passages:
            logger.info(f"[{request_id}] No passages for answer generation; returning fixed answer")
            return AnswerResult(answer=NOT_ENOUGH_INFORMATION, citations=[])

        system = self.prompt.system_prompt()
        user, included = self.prompt.user_prompt(query, passages)
        if included < len(passages):
            logger.debug(f"[{request_id}] Context budget kept {included}/{len(passages)} passages")

        model = getattr(self.llm, "model", "unknown")
        started = time.perf_counter()
        try:
            answer = await self.llm.complete(system, user)
        except RAGError as e:
            raise AnswerGenerationFailed(f"Answer generation failed: {e.message}", cause=e) from e
        except Exception as e:
            raise AnswerGenerationFailed(f"Answer generation failed: {e}", cause=e) from e
        latency_ms = int((time.perf_counter() - started) * 1000)

        if not isinstance(answer, str):
            raise AnswerGenerationFailed("Language model returned a non-text answer")

        report = validate_citations(answer, included)
        if report.out_of_range:
            logger.warning(
                f"[{request_id}] Model cited passages that do not exist: {report.out_of_range} "
                f"(passages={included})"
            )

        prompt_tokens = estimate_tokens(system) + estimate_tokens(user)
        completion_tokens = estimate_tokens(answer)
        log_llm_call(request_id, prompt_tokens, completion_tokens, latency_ms, model=model)

        return AnswerResult(
            answer=answer,
            citations=report.cited,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            llm_called=True,
        )
