import threading
import time
from typing import Callable, List, Optional

from .abstractor import TagAbstractor
from .capabilities import TranslationCapability, TranslationRequest
from .errors import CapabilityError, StateTransitionError, ValidationError
from .logger import get_logger
from .models import FileMetadata, SegmentStatus, TokenCount, TranslationMetadata, TranslationUnit
from .options import ResolveOptions
from .prompt_builder import PromptBuilder, PromptTemplate, TermEntry
from .state_machine import SegmentStateMachine
from .tm_store import TranslationMemoryStore

logger = get_logger(__name__)

TM_EXACT_MODEL = "TM_100%"

TerminologyProvider = Callable[[str, str, Optional[str]], List[TermEntry]]


class TranslationResolver:
    """
    Resolves one unit: reuse an exact TM match, otherwise ask the AI.

    Capability failures end the unit in ERROR and are not re-raised; the job
    layer decides about retries.
    """

    def __init__(self, state_machine: SegmentStateMachine, tm_store: TranslationMemoryStore,
                 translator: TranslationCapability,
                 terminology_provider: Optional[TerminologyProvider] = None):
        self.state_machine = state_machine
        self.tm_store = tm_store
        self.translator = translator
        self.terminology_provider = terminology_provider
        self.abstractor = TagAbstractor()

    def resolve(self, unit: TranslationUnit, options: ResolveOptions,
                file_metadata: Optional[FileMetadata] = None,
                template: Optional[PromptTemplate] = None,
                project_scope: Optional[str] = None,
                cancel_event: Optional[threading.Event] = None) -> TranslationUnit:
        allowed = [SegmentStatus.PENDING, SegmentStatus.ERROR]
        if options.retranslate_tm:
            allowed.append(SegmentStatus.TRANSLATED_TM)
        if unit.status not in allowed:
            raise StateTransitionError(
                unit.status.value, SegmentStatus.TRANSLATING.value,
                f"Unit {unit.unit_id} is {unit.status.value}; only {', '.join(s.value for s in allowed)} can be translated",
            )

        source_language = options.source_language or (file_metadata.source_language if file_metadata else "")
        target_language = options.target_language or (file_metadata.target_language if file_metadata else "")
        if not source_language or not target_language:
            raise ValidationError(f"Unit {unit.unit_id}: source and target language are required")

        unit = self.state_machine.transition(unit, SegmentStatus.TRANSLATING)

        if not options.retranslate_tm:
            matches = self.tm_store.find_matches(unit.source_text, source_language, target_language, project_scope)
            exact = next((m for m in matches if m.is_exact), None)
            if exact is not None:
                logger.info(f"Unit {unit.unit_id}: exact TM match (entry {exact.entry.entry_id})")

                def adopt(u: TranslationUnit):
                    u.translation = exact.entry.target_text
                    u.translation_metadata = TranslationMetadata(ai_model=TM_EXACT_MODEL)

                return self.state_machine.transition(unit, SegmentStatus.TRANSLATED_TM, mutate=adopt)

        terms = self._fetch_terms(unit, source_language, target_language, project_scope)
        abstraction = self.abstractor.abstract(unit.source_text)
        system_instruction, user_prompt = PromptBuilder.build_translation_prompt(
            abstraction.abstracted_text, source_language, target_language,
            template=template, domain=options.domain, terms=terms,
        )
        request = TranslationRequest(
            source_text=abstraction.abstracted_text,
            system_instruction=system_instruction,
            user_prompt=user_prompt,
            model=options.ai_model,
            temperature=options.temperature,
        )

        started = time.monotonic()
        try:
            response = self.translator.translate(request)
            missing = self.abstractor.missing_placeholders(response.translated_text, abstraction.tags_map)
            if missing:
                raise CapabilityError(f"Translation lost placeholders {', '.join(missing)}", provider=options.ai_model)
            translated = self.abstractor.reconstruct(response.translated_text, abstraction.tags_map)
        except CapabilityError as e:
            logger.error(f"Unit {unit.unit_id}: translation failed: {e.message}")
            return self._fail(unit, e.message or "Translation failed", cancel_event)
        except Exception as e:
            logger.error(f"Unit {unit.unit_id}: unexpected translation error: {e}", exc_info=True)
            return self._fail(unit, f"Unexpected error: {e or type(e).__name__}", cancel_event)

        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Unit {unit.unit_id}: job cancelled, discarding AI result")
            return unit

        elapsed = response.processing_time or (time.monotonic() - started)

        def apply(u: TranslationUnit):
            u.translation = translated
            u.translation_metadata = TranslationMetadata(
                ai_model=response.model or options.ai_model,
                token_count=response.token_count or TokenCount(),
                processing_time=elapsed,
            )

        return self.state_machine.transition(unit, SegmentStatus.TRANSLATED, mutate=apply)

    def _fail(self, unit: TranslationUnit, message: str,
              cancel_event: Optional[threading.Event]) -> TranslationUnit:
        if cancel_event is not None and cancel_event.is_set():
            return unit
        return self.state_machine.transition(unit, SegmentStatus.ERROR, error=message)

    def _fetch_terms(self, unit: TranslationUnit, source_language: str, target_language: str,
                     project_scope: Optional[str]) -> List[TermEntry]:
        if self.terminology_provider is None:
            return []
        try:
            return list(self.terminology_provider(source_language, target_language, project_scope))
        except Exception as e:
            logger.warning(f"Unit {unit.unit_id}: terminology lookup failed, continuing without terms: {e}")
            return []
