"""
Groq Scoring Provider
Scores call transcripts against a QA parameter set using Groq JSON mode
"""
import os
import json
import logging
from typing import List, Optional, Tuple
from groq import AsyncGroq, APIError
from pydantic import ValidationError as PydanticValidationError
from app.domain.exceptions import JobFailure, TransientProcessingError
from app.domain.interfaces.scoring_provider import ScoringProvider
from app.domain.models.call_audit import (
    AuditResultItem,
    ParameterType,
    QAParameter,
    ScoringResult,
    Sentiment,
    TokenUsage,
)

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You are an expert call center QA auditor and sentiment analyst. "
    "You score call transcripts against weighted quality parameters and "
    "always answer with a single valid JSON object."
)

RESULT_FORMAT = """{
  "call_summary": "Brief 2-3 sentence summary of the call",
  "audit_results": [
    {
      "parameter_id": "param_id",
      "parameter_name": "Parameter Name",
      "score": 85,
      "comments": "Brief explanation of the score",
      "confidence": 92,
      "evidence": [{"text": "Exact quote from the transcript", "line_number": 5}]
    }
  ],
  "overall_score": 82,
  "sentiment": {"overall": "positive", "customer": "neutral", "agent": "positive"}
}"""


class GroqScoringProvider(ScoringProvider):
    """
    Groq-backed call auditor

    Large rubrics are scored in batches of BATCH_SIZE parameters so the
    JSON answer is never truncated. The first batch also produces the
    summary and sentiment; later batches only score.

    The overall score is recomputed locally as the weighted average of the
    parameter scores. A Fatal or ZTP parameter scoring below
    FATAL_FAIL_SCORE zeroes the whole audit.
    """

    BATCH_SIZE = 5
    FATAL_FAIL_SCORE = 50

    def __init__(self):
        self._client: Optional[AsyncGroq] = None
        self._config: dict = {}
        self._model: str = "llama-3.3-70b-versatile"
        self._temperature: float = 0.2  # Low for consistent scoring
        self._max_tokens: int = 4096

    async def initialize(self, config: dict) -> None:
        """Initialize Groq client with configuration"""
        self._config = config
        api_key = config.get("api_key") or os.getenv("GROQ_API_KEY")

        if not api_key or api_key.startswith("${"):
            raise ValueError("Groq API key not found in config or environment")

        self._client = AsyncGroq(api_key=api_key)

        self._model = config.get("model", "llama-3.3-70b-versatile")
        self._temperature = config.get("temperature", 0.2)
        self._max_tokens = config.get("max_tokens", 4096)

    async def audit_call(
        self,
        transcript: str,
        parameters: List[QAParameter],
        language: str = "en"
    ) -> ScoringResult:
        """
        Score a transcript

        Raises:
            JobFailure: the parameter set has no parameters
            TransientProcessingError: API error or malformed model output
        """
        if not self._client:
            raise RuntimeError("Groq client not initialized. Call initialize() first.")
        if not parameters:
            raise JobFailure("Parameter set has no parameters to score")

        chunks = [
            parameters[i:i + self.BATCH_SIZE]
            for i in range(0, len(parameters), self.BATCH_SIZE)
        ]
        if len(chunks) > 1:
            logger.info(f"High parameter count ({len(parameters)}), scoring in {len(chunks)} batches")

        results: List[AuditResultItem] = []
        usage = TokenUsage()
        summary: Optional[str] = None
        sentiment = Sentiment()
        model_score: Optional[float] = None

        for i, chunk in enumerate(chunks):
            first = i == 0
            prompt = self._build_prompt(transcript, chunk, language, full=first)
            data, chunk_usage = await self._complete(prompt)

            usage = TokenUsage(
                input_tokens=usage.input_tokens + chunk_usage.input_tokens,
                output_tokens=usage.output_tokens + chunk_usage.output_tokens,
                total_tokens=usage.total_tokens + chunk_usage.total_tokens,
            )
            results.extend(self._parse_results(data, chunk))

            if first:
                summary = data.get("call_summary")
                model_score = data.get("overall_score")
                try:
                    sentiment = Sentiment(**(data.get("sentiment") or {}))
                except PydanticValidationError:
                    logger.warning("Ignoring malformed sentiment in scoring response")

        overall = self._overall_score(results, model_score)

        try:
            return ScoringResult(
                overall_score=overall,
                audit_results=results,
                sentiment=sentiment,
                token_usage=usage,
                call_summary=summary,
            )
        except PydanticValidationError as e:
            raise TransientProcessingError(f"Invalid scoring result: {e}") from e

    async def _complete(self, prompt: str) -> Tuple[dict, TokenUsage]:
        """One JSON-mode completion, parsed"""
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                response_format={"type": "json_object"},
            )
        except APIError as e:
            raise TransientProcessingError(f"Groq scoring failed: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise TransientProcessingError("Groq returned an empty scoring response")

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise TransientProcessingError(f"Scoring response is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise TransientProcessingError("Scoring response is not a JSON object")

        usage = TokenUsage()
        if response.usage:
            usage = TokenUsage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )
        return data, usage

    def _build_prompt(
        self,
        transcript: str,
        parameters: List[QAParameter],
        language: str,
        full: bool
    ) -> str:
        parameters_json = json.dumps(
            [p.model_dump(mode="json", exclude_none=True) for p in parameters],
            indent=2
        )

        if full:
            tasks = (
                "1. Evaluate ONLY the parameters listed above.\n"
                "2. Give each parameter a score from 0 to 100, a brief comment and a confidence (0-100).\n"
                "3. Quote 1-3 excerpts from the transcript as evidence for each score.\n"
                "4. ZTP (Zero Tolerance Policy) parameters: any violation is critical.\n"
                "5. Calculate the overall weighted score.\n"
                "6. Summarize the call and classify overall, customer and agent sentiment "
                "as positive, neutral or negative.\n"
            )
            output_format = RESULT_FORMAT
        else:
            tasks = (
                "1. Evaluate ONLY the parameters listed above.\n"
                "2. Give each parameter a score from 0 to 100, a brief comment, a confidence (0-100) "
                "and 1-3 quoted excerpts as evidence.\n"
            )
            output_format = '{"audit_results": [ ...same item format as above... ]}'

        return (
            f"## Parameters to Evaluate:\n{parameters_json}\n\n"
            f"## Call Transcript (language: {language}):\n{transcript}\n\n"
            f"## Instructions:\n{tasks}\n"
            f"Respond ONLY with valid JSON in this exact format:\n{output_format}"
        )

    def _parse_results(self, data: dict, parameters: List[QAParameter]) -> List[AuditResultItem]:
        """
        Map model output onto the requested parameters.

        Weight and type always come from the rubric, never from the model.
        """
        raw_items = data.get("audit_results")
        if not isinstance(raw_items, list):
            raise TransientProcessingError("Scoring response has no audit_results list")

        by_id = {}
        for item in raw_items:
            if isinstance(item, dict) and item.get("parameter_id"):
                by_id[str(item["parameter_id"])] = item

        results = []
        for parameter in parameters:
            item = by_id.get(parameter.id)
            if item is None:
                raise TransientProcessingError(f"Parameter {parameter.id} missing from scoring response")
            try:
                results.append(AuditResultItem(
                    parameter_id=parameter.id,
                    parameter_name=parameter.name,
                    score=max(0.0, min(float(item.get("score", 0)), 100.0)),
                    weight=parameter.weight,
                    type=parameter.type,
                    comments=item.get("comments"),
                    confidence=item.get("confidence"),
                    evidence=[e for e in item.get("evidence") or [] if isinstance(e, dict) and e.get("text")],
                ))
            except (TypeError, ValueError, PydanticValidationError) as e:
                raise TransientProcessingError(f"Malformed score for parameter {parameter.id}: {e}") from e
        return results

    def _overall_score(self, results: List[AuditResultItem], model_score: Optional[float]) -> float:
        fatal_failure = any(
            r.type in (ParameterType.FATAL, ParameterType.ZTP) and r.score < self.FATAL_FAIL_SCORE
            for r in results
        )
        if fatal_failure:
            logger.warning(f"ZTP applied: fatal parameter scored below {self.FATAL_FAIL_SCORE}")
            return 0.0

        total_weight = sum(r.weight for r in results)
        if total_weight > 0:
            return round(sum(r.score * r.weight for r in results) / total_weight, 2)

        if isinstance(model_score, (int, float)):
            return max(0.0, min(float(model_score), 100.0))
        return round(sum(r.score for r in results) / len(results), 2) if results else 0.0

    async def cleanup(self) -> None:
        """Release resources"""
        self._client = None

    @property
    def name(self) -> str:
        return "groq"
