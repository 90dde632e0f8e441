REVIEW_SYSTEM_PROMPT = "You are an expert translation reviewer. Output strictly valid JSON."

REVIEW_USER_PROMPT_TEMPLATE = """You are a professional translation reviewer fluent in {source_lang} and {target_lang}.
Review the translation below and report concrete problems.

1. Original:
{original}

2. Current translation:
{translation}

{context}
Check accuracy, fluency, terminology, grammar and spelling, and style consistency.
Inline placeholders such as {{1}} must stay untouched.

Reply with JSON only, in this shape:
{{
  "suggestedTranslation": "the best translation you can offer",
  "issues": [
    {{
      "type": "accuracy|fluency|terminology|grammar|style|consistency|formatting|omission|addition|other",
      "severity": "low|medium|high",
      "description": "what is wrong",
      "position": {{"start": 0, "end": 0}},
      "suggestion": "how to fix it"
    }}
  ],
  "scores": [
    {{"type": "overall", "score": 0, "details": "reason"}},
    {{"type": "accuracy", "score": 0, "details": "reason"}},
    {{"type": "fluency", "score": 0, "details": "reason"}},
    {{"type": "terminology", "score": 0, "details": "reason"}},
    {{"type": "style", "score": 0, "details": "reason"}}
  ]
}}"""

CONTEXT_SEGMENT_TEMPLATE = "[Segment {number}]\nOriginal: {original}\nTranslation: {translation}\n"
