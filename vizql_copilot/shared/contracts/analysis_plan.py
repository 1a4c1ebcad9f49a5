"""
Analysis plan contract.

The analysis planner decides *what* to analyze (steps, metrics, segments)
and proposes a step query; the query compiler later turns that into an
executable QueryPayload.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from vizql_copilot.shared.contracts.query_spec import FieldSpec, FilterSpec, QuerySpec


class StepRefinement(BaseModel):
    """Optional query refinement suggested for a step."""

    model_config = ConfigDict(extra="allow")

    add_fields: Optional[List[FieldSpec]] = None
    adjust_filters: Optional[List[FilterSpec]] = None
    note: Optional[str] = None


class CodeExecutionDirective(BaseModel):
    """Request to run generated code over the artifacts for this step."""

    model_config = ConfigDict(extra="allow")

    instructions: str = Field(min_length=1, description="analysis_plan.steps[].ci.instructions is required")
    expected_outputs: Optional[List[str]] = None
    charts: Optional[List[str]] = None


class AnalysisStep(BaseModel):
    """A single step of the analysis plan."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1, description="analysis_plan.steps[].id is required")
    goal: str = Field(min_length=1, description="analysis_plan.steps[].goal is required")
    hypothesis: Optional[str] = None
    vizql_refinement: Optional[StepRefinement] = None
    ci: Optional[CodeExecutionDirective] = None
    success_criteria: Optional[str] = None


class AnalysisPlan(BaseModel):
    """Ordered, non-empty list of steps plus framing."""

    model_config = ConfigDict(extra="allow")

    overview: Optional[str] = None
    metrics: Optional[List[str]] = None
    segments: Optional[List[str]] = None
    steps: List[AnalysisStep] = Field(min_length=1, description="analysis_plan.steps must include at least one step")
    assumptions: Optional[List[str]] = None

    def requests_code_execution(self) -> bool:
        return any(step.ci is not None for step in self.steps)


class AnalysisPlannerOutput(BaseModel):
    """Output of the analysis stage: the plan and the step query it implies."""

    model_config = ConfigDict(extra="ignore")

    analysis_plan: AnalysisPlan
    query: QuerySpec
