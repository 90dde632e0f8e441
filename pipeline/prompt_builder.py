import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .logger import get_logger

logger = get_logger(__name__)

DEFAULT_TRANSLATION_SYSTEM_PROMPT = "You are a professional translator."
DEFAULT_TRANSLATION_USER_PROMPT = (
    "Translate the following text from {{sourceLanguage}} to {{targetLanguage}}. "
    "Domain: {{domain}}. Text: {{input}}"
)

PLACEHOLDER_RULE = (
    "Preserve all {n} placeholders exactly as they appear in the source. "
    "Do not move or translate them. Output only the translation."
)

_VARIABLE = re.compile(r"\{\{(\w+)\}\}")


@dataclass
class PromptTemplate:
    template_id: str
    system_instruction: str = DEFAULT_TRANSLATION_SYSTEM_PROMPT
    user_prompt: str = DEFAULT_TRANSLATION_USER_PROMPT
    task_type: str = "translation"  # translation | review
    domain: str = ""


@dataclass
class TermEntry:
    source: str
    target: str


def replace_placeholders(template: str, context: Dict[str, str]) -> str:
    """Substitutes {{name}} variables; unknown names become empty strings."""
    return _VARIABLE.sub(lambda m: str(context.get(m.group(1)) or ""), template)


class PromptBuilder:
    """
    Builds the system instruction and user prompt of one translation call.
    """

    @staticmethod
    def build_translation_prompt(source_text: str, source_language: str, target_language: str,
                                 template: Optional[PromptTemplate] = None,
                                 domain: Optional[str] = None,
                                 terms: Optional[List[TermEntry]] = None) -> Tuple[str, str]:
        if template is not None and template.task_type != "translation":
            logger.warning(f"Template {template.template_id} is a {template.task_type} template. Using default.")
            template = None

        system_template = template.system_instruction if template else DEFAULT_TRANSLATION_SYSTEM_PROMPT
        user_template = template.user_prompt if template else DEFAULT_TRANSLATION_USER_PROMPT

        terminology = ""
        if terms:
            terminology = "; ".join(f'"{t.source}" -> "{t.target}"' for t in terms)

        context = {
            "sourceLanguage": source_language,
            "targetLanguage": target_language,
            "domain": domain or (template.domain if template else "") or "general",
            "terminology": terminology,
        }

        system_instruction = replace_placeholders(system_template, context)
        constraints = [PLACEHOLDER_RULE]
        if terminology and "{{terminology}}" not in system_template + user_template:
            constraints.append(f"Terminology (use exactly): {terminology}")
        system_instruction = "\n".join([system_instruction] + constraints)

        user_prompt = replace_placeholders(user_template, dict(context, input=source_text))
        if "{{input}}" not in user_template:
            user_prompt = f"{user_prompt}\n\n{source_text}"
        return system_instruction, user_prompt
