"""
Prompt composition and intervention splicing.

A turn prompt is kept as labelled sections until the moment it is sent, so
interventions can be spliced in deterministically:

- correction: a ``[CORRECTION]`` block before everything else
- side_question: a ``[SIDE QUESTION]`` block after everything else
- direction: a ``[DIRECTION]`` block replacing the topic framing
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from chatpipes.protocol.models import Intervention, InterventionKind, Participant

CORRECTION_LABEL = "[CORRECTION]"
SIDE_QUESTION_LABEL = "[SIDE QUESTION]"
DIRECTION_LABEL = "[DIRECTION]"
MEMORY_LABEL = "[MEMORY]"
CONTEXT_LABEL = "[CONTEXT]"
TOPIC_LABEL = "[TOPIC]"

SECTION_SEPARATOR = "\n\n"


class ComposedPrompt(BaseModel):
    """A prompt held as sections, rendered to text on dispatch."""

    model_config = ConfigDict(frozen=True)

    persona: str = Field(default="", description="Who the speaker is and how they behave")
    memory: str = Field(default="", description="Speaker's own rehydration summary")
    context: str = Field(default="", description="What the others said")
    topic: str = Field(default="", description="What this turn should be about")
    direction: Optional[str] = Field(None, description="Operator direction replacing the topic")
    corrections: List[str] = Field(default_factory=list, description="Correction payloads, in application order")
    side_questions: List[str] = Field(default_factory=list, description="Side question payloads, in application order")

    def render(self) -> str:
        sections = [f"{CORRECTION_LABEL} {text}" for text in self.corrections]
        if self.persona:
            sections.append(self.persona)
        if self.memory:
            sections.append(f"{MEMORY_LABEL}\n{self.memory}")
        if self.context:
            sections.append(f"{CONTEXT_LABEL}\n{self.context}")
        if self.direction is not None:
            sections.append(f"{DIRECTION_LABEL} {self.direction}")
        elif self.topic:
            sections.append(f"{TOPIC_LABEL}\n{self.topic}")
        sections.extend(f"{SIDE_QUESTION_LABEL} {text}" for text in self.side_questions)
        return SECTION_SEPARATOR.join(sections)


class PromptBuilder:
    """Builds turn prompts and applies interventions to them."""

    def build(
        self,
        speaker: Participant,
        memory: str = "",
        context_lines: Optional[List[str]] = None,
        topic: str = ""
    ) -> ComposedPrompt:
        """
        Compose the prompt for a speaker.

        Args:
            speaker: The participant about to speak
            memory: The speaker's rehydration summary
            context_lines: Lines describing what the others said
            topic: Topic framing for this turn
        """
        persona_lines = [f"You are {speaker.name}."]
        if speaker.persona.instructions:
            persona_lines.append(speaker.persona.instructions.strip())
        if speaker.persona.behavior_style:
            persona_lines.append(f"Style: {speaker.persona.behavior_style}")

        return ComposedPrompt(
            persona="\n".join(persona_lines),
            memory=memory,
            context="\n".join(line for line in (context_lines or []) if line),
            topic=topic
        )

    def apply(self, prompt: ComposedPrompt, intervention: Intervention) -> ComposedPrompt:
        """
        Splice an intervention into a prompt.

        Raises:
            ValueError: For control kinds, which never touch a prompt
        """
        payload = intervention.payload.strip()
        if intervention.kind == InterventionKind.CORRECTION:
            return prompt.model_copy(update={"corrections": prompt.corrections + [payload]})
        if intervention.kind == InterventionKind.SIDE_QUESTION:
            return prompt.model_copy(update={"side_questions": prompt.side_questions + [payload]})
        if intervention.kind == InterventionKind.DIRECTION:
            return prompt.model_copy(update={"direction": payload})
        raise ValueError(f"Intervention kind '{intervention.kind.value}' does not modify prompts")
