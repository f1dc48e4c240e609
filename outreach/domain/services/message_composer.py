"""
Message Composer
Fills SMS templates with lead and tenant variables.
"""
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from outreach.domain.models.lead import Lead
from outreach.domain.models.tenant_config import TenantDispatchConfig

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"\{\{(\w+)\}\}")

DEFAULT_TEMPLATE_NAME = "default"

# Reserved fallbacks used when neither the lead nor the caller supplies a value
RESERVED_DEFAULTS: Dict[str, str] = {
    "company": "Our Company",
}

DEFAULT_TEMPLATES: Dict[str, str] = {
    "default": "Hi {{name}}, this is a message from {{company}}. {{message}}",
    "reminder": "Hi {{name}}, just a reminder about your upcoming appointment with {{company}}.",
    "followUp": "Hi {{name}}, thank you for your interest in {{company}}. Would you like to schedule a call?",
}


@dataclass
class MessageTemplate:
    """SMS template with content and metadata."""
    name: str
    content: str
    max_length: int = 160  # Single SMS limit

    @property
    def tokens(self) -> List[str]:
        """Token names referenced by the template, in order of appearance."""
        return TOKEN_PATTERN.findall(self.content)


class MessageComposer:
    """
    Renders ``{{token}}`` templates.

    Resolution order for each token:
    1. ``{{name}}`` - the lead's own name
    2. caller-supplied variables
    3. reserved defaults (``company``)
    4. otherwise the literal token text is kept

    Rendering never raises for unknown tokens so a single malformed template
    cannot block a whole batch.
    """

    def __init__(
        self,
        templates: Optional[Mapping[str, str]] = None,
        reserved_defaults: Optional[Mapping[str, str]] = None,
        max_length: int = 160
    ):
        self._templates: Dict[str, str] = {**DEFAULT_TEMPLATES}
        if templates:
            self._templates.update(templates)
        self._reserved = {**RESERVED_DEFAULTS, **(reserved_defaults or {})}
        self.max_length = max_length

    def render(self, template: str, lead: Lead, variables: Optional[Mapping[str, Any]] = None) -> str:
        """
        Render a template for a lead.

        Args:
            template: Template text with ``{{token}}`` placeholders
            lead: Lead being contacted
            variables: Caller-supplied values for other tokens

        Returns:
            Rendered message
        """
        variables = variables or {}

        def resolve(match: "re.Match[str]") -> str:
            token = match.group(1)

            if token == "name" and lead.name:
                return lead.name

            value = variables.get(token)
            if value is not None and value != "":
                return str(value)

            if token in self._reserved:
                return self._reserved[token]

            return match.group(0)

        rendered = TOKEN_PATTERN.sub(resolve, template)

        if len(rendered) > self.max_length:
            logger.warning(
                f"SMS rendered to {len(rendered)} chars (exceeds {self.max_length})"
            )

        return rendered

    def get_template(
        self,
        template_name: Optional[str],
        tenant: Optional[TenantDispatchConfig] = None
    ) -> MessageTemplate:
        """
        Look up a template by name.

        Tenant templates override the global set. Unknown names fall back to
        the default template.
        """
        available = dict(self._templates)
        if tenant and tenant.sms_templates:
            available.update(tenant.sms_templates)

        name = template_name or DEFAULT_TEMPLATE_NAME
        if name not in available:
            logger.info(f"Unknown SMS template '{name}', using '{DEFAULT_TEMPLATE_NAME}'")
            name = DEFAULT_TEMPLATE_NAME

        return MessageTemplate(name=name, content=available[name], max_length=self.max_length)

    def compose(
        self,
        template_name: Optional[str],
        lead: Lead,
        custom_data: Optional[Mapping[str, Any]] = None,
        tenant: Optional[TenantDispatchConfig] = None
    ) -> tuple[MessageTemplate, str]:
        """
        Pick a template and render it with tenant values under caller data.

        Returns:
            (template, rendered message)
        """
        template = self.get_template(template_name, tenant)

        variables: Dict[str, Any] = {}
        if tenant:
            if tenant.company_name:
                variables["company"] = tenant.company_name
            if tenant.default_message:
                variables["message"] = tenant.default_message
        variables.update(custom_data or {})

        return template, self.render(template.content, lead, variables)

    def list_templates(self) -> List[str]:
        """List all globally available template names."""
        return list(self._templates.keys())
