"""Pydantic models for node configs with a discriminated union.

Every node kind has one config model tagged by ``type``; the union is closed,
so an unknown kind is a validation error rather than a silent pass-through.
Configs are validated twice: at publish time with template strings still in
place, and at run time after the expression resolver has substituted them.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


# =============================================================================
# BASE MODELS
# =============================================================================

class BaseNodeConfig(BaseModel):
    """Base class for all node configs."""
    model_config = {"extra": "allow", "populate_by_name": True}


class ConditionConfig(BaseModel):
    model_config = {"extra": "allow", "populate_by_name": True}

    field: str = ""
    operator: str = "eq"
    value: Any = None


# =============================================================================
# TRIGGER MODELS
# =============================================================================

class ManualTriggerConfig(BaseNodeConfig):
    type: Literal["manual-trigger"]


class WebhookTriggerConfig(BaseNodeConfig):
    type: Literal["webhook-trigger"]
    method: Optional[str] = None


class ApiTriggerConfig(BaseNodeConfig):
    type: Literal["api-trigger"]


class FormTriggerConfig(BaseNodeConfig):
    type: Literal["form-trigger"]
    form_id: Optional[str] = Field(default=None, alias="formId")


class ScheduleTriggerConfig(BaseNodeConfig):
    type: Literal["schedule-trigger"]
    cron: Optional[str] = None
    timezone: str = "UTC"


# =============================================================================
# LOGIC MODELS
# =============================================================================

class ConditionalConfig(BaseNodeConfig):
    type: Literal["conditional"]
    expression: Optional[str] = None
    conditions: List[ConditionConfig] = Field(default_factory=list)
    combine_with: Literal["and", "or"] = Field(default="and", alias="combineWith")


class SwitchCase(BaseModel):
    value: Any = None
    output: str


class SwitchConfig(BaseNodeConfig):
    type: Literal["switch"]
    value: Any = None
    cases: List[SwitchCase] = Field(default_factory=list)
    default_output: str = Field(default="default", alias="defaultOutput")
    match_mode: Literal["exact", "contains", "regex"] = Field(default="exact", alias="matchMode")


class DelayConfig(BaseNodeConfig):
    type: Literal["delay"]
    duration: Optional[float] = Field(default=None, ge=0)
    unit: Literal["seconds", "minutes", "hours", "days"] = "seconds"
    until: Optional[str] = None


# =============================================================================
# DATA MODELS
# =============================================================================

class FieldMapping(BaseModel):
    target: str
    source: Any = None
    default: Any = None


class TransformConfig(BaseNodeConfig):
    type: Literal["transform"]
    mode: Literal["template", "mapping"] = "template"
    template: Any = None
    mappings: List[FieldMapping] = Field(default_factory=list)


class FilterConfig(BaseNodeConfig):
    type: Literal["filter"]
    items: Any = None
    conditions: List[ConditionConfig] = Field(default_factory=list)
    combine_with: Literal["and", "or"] = Field(default="and", alias="combineWith")


class MergeConfig(BaseNodeConfig):
    type: Literal["merge"]
    mode: Literal["object", "append", "first"] = "object"


class StoreQueryConfig(BaseNodeConfig):
    type: Literal["store-query"]
    collection: Optional[str] = None
    conditions: List[ConditionConfig] = Field(default_factory=list)
    combine_with: Literal["and", "or"] = Field(default="and", alias="combineWith")
    limit: int = Field(default=100, ge=1, le=1000)
    sort_by: Optional[str] = Field(default=None, alias="sortBy")
    sort_order: Literal["asc", "desc"] = Field(default="asc", alias="sortOrder")


class StoreWriteConfig(BaseNodeConfig):
    type: Literal["store-write"]
    collection: Optional[str] = None
    operation: Literal["insert", "update", "upsert", "delete"] = "insert"
    document: Optional[Dict[str, Any]] = None
    conditions: List[ConditionConfig] = Field(default_factory=list)


# =============================================================================
# ACTION MODELS
# =============================================================================

class HttpAuthConfig(BaseModel):
    model_config = {"populate_by_name": True}

    type: Literal["none", "basic", "bearer", "api_key"] = "none"
    username: Optional[str] = None
    password: Optional[str] = None
    token: Optional[str] = None
    header_name: str = Field(default="X-API-Key", alias="headerName")
    api_key: Optional[str] = Field(default=None, alias="apiKey")


class HttpRequestConfig(BaseNodeConfig):
    type: Literal["http-request"]
    url: Optional[str] = None
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = "GET"
    headers: Dict[str, Any] = Field(default_factory=dict)
    query_params: Dict[str, Any] = Field(default_factory=dict, alias="queryParams")
    body: Any = None
    body_type: Literal["json", "form", "raw"] = Field(default="json", alias="bodyType")
    auth: Optional[HttpAuthConfig] = None
    timeout: Optional[float] = Field(default=None, gt=0, le=300)


class EmailSendConfig(BaseNodeConfig):
    type: Literal["email-send"]
    to: Optional[Union[str, List[str]]] = None
    cc: Optional[Union[str, List[str]]] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    html: Optional[str] = None
    from_email: Optional[str] = Field(default=None, alias="from")
    reply_to: Optional[str] = Field(default=None, alias="replyTo")


class SlackMessageConfig(BaseNodeConfig):
    type: Literal["slack-message"]
    text: Optional[str] = None
    webhook_url: Optional[str] = Field(default=None, alias="webhookUrl")
    channel: Optional[str] = None
    blocks: Optional[List[Dict[str, Any]]] = None


# =============================================================================
# AI MODELS
# =============================================================================

class AiPromptConfig(BaseNodeConfig):
    type: Literal["ai-prompt"]
    prompt: Optional[str] = None
    system_prompt: Optional[str] = Field(default=None, alias="systemPrompt")
    model: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, alias="maxTokens", ge=1, le=32000)
    output_format: Literal["text", "json"] = Field(default="text", alias="outputFormat")


# =============================================================================
# DISCRIMINATED UNION
# =============================================================================

NodeConfig = Annotated[
    Union[
        ManualTriggerConfig,
        WebhookTriggerConfig,
        ApiTriggerConfig,
        FormTriggerConfig,
        ScheduleTriggerConfig,
        ConditionalConfig,
        SwitchConfig,
        DelayConfig,
        TransformConfig,
        FilterConfig,
        MergeConfig,
        StoreQueryConfig,
        StoreWriteConfig,
        HttpRequestConfig,
        EmailSendConfig,
        SlackMessageConfig,
        AiPromptConfig,
    ],
    Field(discriminator="type"),
]

# Created once at module level
_node_config_adapter = TypeAdapter(NodeConfig)


def validate_node_config(node_type: str, config: Dict[str, Any]) -> BaseNodeConfig:
    """Validate a node config using the model for its kind.

    Raises:
        ValidationError: If the kind is unknown or the config is invalid
    """
    return _node_config_adapter.validate_python({**(config or {}), "type": node_type})
