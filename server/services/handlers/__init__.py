"""Node handlers package, one module per node category.

- base.py: NodeHandler contract and NodeContext
- triggers.py: manual, form, webhook, schedule and API triggers
- logic.py: Conditional, Switch, Delay
- data.py: Transform, Filter, Merge
- store.py: Store Query, Store Write
- http.py: HTTP Request
- messaging.py: Email Send, Slack Message
- ai.py: AI Prompt
"""

from .base import NodeContext, NodeHandler
from .triggers import TriggerHandler, FormTriggerHandler, ScheduleTriggerHandler, build_trigger_handlers
from .logic import ConditionalHandler, SwitchHandler, DelayHandler
from .data import TransformHandler, FilterHandler, MergeHandler
from .store import StoreQueryHandler, StoreWriteHandler
from .http import HttpRequestHandler
from .messaging import EmailSendHandler, SlackMessageHandler, SmtpMailer
from .ai import AiPromptHandler

__all__ = [
    'NodeContext',
    'NodeHandler',
    'TriggerHandler',
    'FormTriggerHandler',
    'ScheduleTriggerHandler',
    'build_trigger_handlers',
    'ConditionalHandler',
    'SwitchHandler',
    'DelayHandler',
    'TransformHandler',
    'FilterHandler',
    'MergeHandler',
    'StoreQueryHandler',
    'StoreWriteHandler',
    'HttpRequestHandler',
    'EmailSendHandler',
    'SlackMessageHandler',
    'SmtpMailer',
    'AiPromptHandler',
]
