"""Models for catalog records: targets, test definitions, suites and profiles."""

from collections.abc import Mapping, Sequence
from typing import Any, Literal

from pydantic import Field, field_validator

from aitestbench.models.base import Model

type HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]
type TransportFormat = Literal["sse", "jsonl", "chunked", "unknown"]
type AuthType = Literal["none", "bearer", "basic", "oauth", "custom"]
type TruncationPolicy = Literal["fail", "warn", "allow"]

PROXY_PERPLEXITY_PROTOCOL = "proxy_perplexity"


class TargetAuth(Model):
    """How to authenticate against a target."""

    type: AuthType = "none"
    header_name: str = "Authorization"
    token_env: str | None = Field(
        default=None, description="Environment variable holding the secret"
    )


class Target(Model):
    """An inference server the harness can send requests to."""

    id: str
    display_name: str | None = None
    base_url: str = Field(..., description="Base URL, e.g. http://localhost:11434")
    api_family: str = Field(
        default="openai-compatible", description="Adapter key for the server API"
    )
    auth: TargetAuth = Field(default_factory=TargetAuth)
    default_model: str | None = None
    context_window_tokens: int | None = Field(
        default=None, description="Declared maximum context size of the model"
    )
    defaults: Mapping[str, Any] = Field(
        default_factory=dict, description="Target level effective settings"
    )


class Assertion(Model):
    """Declarative check applied to a captured response."""

    type: str
    target: str | None = None
    expected: Any = None


class ExtractRule(Model):
    """Copies a JSON path of the response body into a run variable."""

    name: str
    path: str


class TransportSpec(Model):
    """Declared transport of a request template."""

    format: str | None = None

    def normalised_format(self) -> TransportFormat | None:
        """Map unknown declared formats to "unknown"."""
        match self.format:
            case None | "":
                return None
            case "sse" | "jsonl" | "chunked" | "unknown":
                return self.format
            case _:
                return "unknown"


class RequestTemplate(Model):
    """Shape of the HTTP request sent for a step."""

    path: str | None = Field(
        default=None, description="Request path; the adapter default when omitted"
    )
    method: HttpMethod = "POST"
    headers: Mapping[str, str] = Field(default_factory=dict)
    body_template: Mapping[str, Any] = Field(default_factory=dict)
    transport: TransportSpec | None = None

    @field_validator("method", mode="before")
    @classmethod
    def _uppercase_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class StepDefinition(Model):
    """One HTTP exchange of a test."""

    name: str | None = None
    request_template: RequestTemplate | None = None
    assertions: Sequence[Assertion] = Field(default_factory=list)
    extract: Sequence[ExtractRule] = Field(default_factory=list)


class TestDefinition(Model):
    """A versioned test loaded from the catalog."""

    __test__ = False

    id: str
    version: str = "1"
    name: str | None = None
    description: str | None = None
    protocols: Sequence[str] = Field(default_factory=list)
    request_template: RequestTemplate | None = None
    assertions: Sequence[Assertion] = Field(default_factory=list)
    extract: Sequence[ExtractRule] = Field(default_factory=list)
    steps: Sequence[StepDefinition] = Field(
        default_factory=list,
        description="Explicit steps (empty means one step from the fields above)",
    )
    metric_rules: Mapping[str, Any] | None = None
    max_retries: int | None = None

    @property
    def uses_proxy_perplexity(self) -> bool:
        """Whether the test is scored against the proxy perplexity dataset."""
        return PROXY_PERPLEXITY_PROTOCOL in self.protocols

    def to_steps(self) -> Sequence[StepDefinition]:
        """Return the steps to execute, in order.

        A definition without explicit steps is a single step built from its own
        request template, assertions and extract rules.
        """
        if self.steps:
            return list(self.steps)
        return [
            StepDefinition(
                request_template=self.request_template,
                assertions=self.assertions,
                extract=self.extract,
            )
        ]


class Suite(Model):
    """Ordered list of tests run together."""

    id: str
    name: str | None = None
    ordered_test_ids: Sequence[str] = Field(default_factory=list)


class ContextStrategy(Model):
    """Profile level rule for the context window budget."""

    type: Literal["fixed", "percentage", "ramp"] = "fixed"
    value: float | None = None
    ramp: Sequence[int] = Field(default_factory=list)
    truncation_policy: TruncationPolicy = "warn"


class Profile(Model):
    """Versioned bundle of generation, context and execution defaults."""

    id: str
    version: str = "1"
    name: str | None = None
    description: str | None = None
    generation_parameters: Mapping[str, Any] = Field(default_factory=dict)
    context_strategy: ContextStrategy | None = None
    execution_behaviour: Mapping[str, Any] = Field(default_factory=dict)
