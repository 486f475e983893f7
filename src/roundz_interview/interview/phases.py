"""
Interview phase sequencing.

The phase order is fixed and never branches: FIT -> TECH -> BRAINTEASER -> DONE.
"""

import logging
from dataclasses import dataclass

from roundz_interview.interview.schemas import PHASE_ORDER, Phase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PhaseScript:
    """What the interviewer says and is instructed with when entering a phase."""

    title: str
    system_prompt: str
    opening: str


PHASE_SCRIPTS: dict[Phase, PhaseScript] = {
    Phase.FIT: PhaseScript(
        title="Cultural Fit Assessment",
        system_prompt=(
            "You are a professional HR interviewer conducting a cultural fit assessment. "
            "Ask questions about the candidate's background and motivation. "
            "Keep it conversational and natural."
        ),
        opening=(
            "Hello! I'm excited to chat with you today. Let's start with some questions about "
            "your background and what motivates you. Can you tell me a bit about yourself?"
        ),
    ),
    Phase.TECH: PhaseScript(
        title="Technical Evaluation",
        system_prompt=(
            "You are a technical interviewer. The candidate can see SQL and Python code on screen. "
            "Ask them to explain the code and identify any issues."
        ),
        opening=(
            "Great! Now let's move into the technical portion. I'll show you some code examples, "
            "and we can discuss your approach to solving technical problems."
        ),
    ),
    Phase.BRAINTEASER: PhaseScript(
        title="Problem Solving Challenge",
        system_prompt=(
            "You are interviewing with a logic puzzle. Three doors - A always tells truth, "
            "B always lies, C sometimes lies. One door has treasure. Guide them through the puzzle."
        ),
        opening=(
            "Excellent work so far! For our final section, I have a logic puzzle for you. "
            "Take your time and think through it out loud - I want to understand your reasoning process."
        ),
    ),
    Phase.DONE: PhaseScript(
        title="Interview Complete",
        system_prompt="The interview is complete. Thank the candidate warmly.",
        opening=(
            "Thank you so much for your time today! We've completed all sections of the interview. "
            "You'll hear back from our team soon."
        ),
    ),
}


class PhaseController:
    """
    Tracks the active interview phase.

    Phases only move forward, one step at a time. DONE is terminal; the only
    way out of it is a new session.
    """

    def __init__(self, scripts: dict[Phase, PhaseScript] | None = None) -> None:
        self._scripts = scripts or PHASE_SCRIPTS
        missing = [p for p in PHASE_ORDER if p not in self._scripts]
        if missing:
            raise ValueError(f"Missing phase scripts: {', '.join(p.value for p in missing)}")
        self._index = 0

    @property
    def current(self) -> Phase:
        """Get the active phase."""
        return PHASE_ORDER[self._index]

    @property
    def is_terminal(self) -> bool:
        """Check whether the interview reached DONE."""
        return self.current is Phase.DONE

    def advance(self) -> Phase | None:
        """
        Move to the next phase.

        Returns:
            The new phase, or None if already at the terminal phase.
        """
        if self._index + 1 >= len(PHASE_ORDER):
            logger.debug(f"[PHASE] advance ignored, already at {self.current.value}")
            return None
        previous = self.current
        self._index += 1
        logger.info(f"[PHASE] {previous.value} -> {self.current.value}")
        return self.current

    def completed_phases(self) -> list[Phase]:
        """Phases already left behind, in order."""
        return list(PHASE_ORDER[: self._index])

    def script(self, phase: Phase | None = None) -> PhaseScript:
        return self._scripts[phase or self.current]

    def opening_utterance(self, phase: Phase | None = None) -> str:
        return self.script(phase).opening

    def transition_message(self, phase: Phase | None = None) -> str:
        """Render the system message that frames a move into ``phase``."""
        target = phase or self.current
        script = self.script(target)
        return (
            f"PHASE TRANSITION: The interview is now moving to the {target.value} phase.\n\n"
            f"{script.system_prompt}\n\n"
            f'Start this phase by saying: "{script.opening}"'
        )
