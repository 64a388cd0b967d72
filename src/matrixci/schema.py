# schema.py
#
# Pydantic schema of the YAML pipeline document. Field aliases follow the
# document's spelling (`runs-on`, `continue-on-error`, `with`, `if`, ...).

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

ScalarValue = Union[bool, int, float, str]


class _Document(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepDocument(_Document):
    id: Optional[str] = None
    name: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, ScalarValue] = Field(default_factory=dict)
    if_: Optional[Union[bool, str]] = Field(default=None, alias="if")
    continue_on_error: bool = Field(default=False, alias="continue-on-error")
    timeout_minutes: Optional[float] = Field(default=None, alias="timeout-minutes", gt=0)
    working_directory: Optional[str] = Field(default=None, alias="working-directory")
    shell: Optional[Literal["sh", "bash"]] = None

    @model_validator(mode="after")
    def _exactly_one_kind(self) -> "StepDocument":
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        if self.uses is not None and self.shell is not None:
            raise ValueError("'shell' only applies to 'run' steps")
        if self.run is not None and self.with_:
            raise ValueError("'with' only applies to 'uses' steps")
        return self


class StrategyDocument(_Document):
    matrix: Optional[Dict[str, Any]] = None
    fail_fast: bool = Field(default=False, alias="fail-fast")
    max_parallel: Optional[int] = Field(default=None, alias="max-parallel", gt=0)


class JobDocument(_Document):
    name: Optional[str] = None
    runs_on: Optional[str] = Field(default=None, alias="runs-on")
    needs: Union[str, List[str]] = Field(default_factory=list)
    if_: Optional[Union[bool, str]] = Field(default=None, alias="if")
    env: Dict[str, ScalarValue] = Field(default_factory=dict)
    strategy: Optional[StrategyDocument] = None
    paths: Optional[List[str]] = None
    steps: List[StepDocument] = Field(min_length=1)


class TriggerDocument(_Document):
    branches: Optional[List[str]] = None
    paths: Optional[List[str]] = None


class PipelineDocument(_Document):
    name: Optional[str] = None
    on: Union[str, List[str], Dict[str, Optional[TriggerDocument]]]
    env: Dict[str, ScalarValue] = Field(default_factory=dict)
    jobs: Dict[str, JobDocument] = Field(min_length=1)
