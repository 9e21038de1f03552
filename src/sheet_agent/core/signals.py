"""Signal decision resolver: validation failures in, one protocol action out."""

import logging

from sheet_agent.core.models import (
    DecisionAction,
    ResolutionAction,
    Severity,
    SignalDecision,
    SignalResolution,
    SignalType,
    SuggestedAction,
    ValidationCheckResult,
    ValidationContext,
    ValidationSignal,
)

# Strongest first; the first action any signal selects wins
ACTION_PRIORITY: tuple[ResolutionAction, ...] = (
    ResolutionAction.ABORT,
    ResolutionAction.ASK_USER,
    ResolutionAction.ROLLBACK,
    ResolutionAction.FIX_AND_RETRY,
    ResolutionAction.IGNORE_ONCE,
    ResolutionAction.IGNORE_RULE,
)

_TO_DECISION = {
    ResolutionAction.ABORT: DecisionAction.ABORT,
    ResolutionAction.ASK_USER: DecisionAction.ASK_USER,
    ResolutionAction.ROLLBACK: DecisionAction.ROLLBACK_AND_REPLAN,
    ResolutionAction.FIX_AND_RETRY: DecisionAction.FIX_AND_RETRY,
    ResolutionAction.IGNORE_ONCE: DecisionAction.CONTINUE,
    ResolutionAction.IGNORE_RULE: DecisionAction.CONTINUE,
}

_FROM_RECOMMENDED = {
    DecisionAction.ABORT: ResolutionAction.ABORT,
    DecisionAction.ASK_USER: ResolutionAction.ASK_USER,
    DecisionAction.ROLLBACK_AND_REPLAN: ResolutionAction.ROLLBACK,
    DecisionAction.FIX_AND_RETRY: ResolutionAction.FIX_AND_RETRY,
    DecisionAction.CONTINUE: ResolutionAction.IGNORE_ONCE,
}

_TYPE_KEYWORDS: tuple[tuple[SignalType, tuple[str, ...]], ...] = (
    (SignalType.DATA_INTEGRITY, ("formula",)),
    (SignalType.SEMANTIC_ERROR, ("hardcode", "hard-code", "constant")),
    (SignalType.STRUCTURAL_ISSUE, ("structure", "header", "shape", "column count")),
    (
        SignalType.REFERENCE_ERROR,
        ("reference", "not found", "does not exist", "missing", "unknown sheet"),
    ),
)

# Policy for block-severity signals without a rule recommendation
_BLOCK_POLICY = {
    SignalType.DATA_INTEGRITY: ResolutionAction.ROLLBACK,
    SignalType.SEMANTIC_ERROR: ResolutionAction.ROLLBACK,
    SignalType.STRUCTURAL_ISSUE: ResolutionAction.ROLLBACK,
    SignalType.REFERENCE_ERROR: ResolutionAction.ASK_USER,
}


def classify_signal_type(result: ValidationCheckResult) -> SignalType:
    """Classify a failing check by the wording of its message."""
    message = result.message.lower()
    for signal_type, keywords in _TYPE_KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return signal_type
    return SignalType.QUALITY_WARNING


def suggested_actions(
    severity: Severity, signal_type: SignalType, result: ValidationCheckResult
) -> tuple[SuggestedAction, ...]:
    actions = [
        SuggestedAction(
            action=ResolutionAction.ROLLBACK,
            description="Roll back this operation and restore the original data",
        )
    ]
    if signal_type in (SignalType.DATA_INTEGRITY, SignalType.SEMANTIC_ERROR):
        actions.append(
            SuggestedAction(
                action=ResolutionAction.FIX_AND_RETRY,
                description=result.suggested_fix or "Retry the step the correct way",
                impact="medium",
            )
        )
    actions.append(
        SuggestedAction(
            action=ResolutionAction.ASK_USER,
            description="Report the problem and ask for guidance",
            requires_confirmation=True,
            impact="none",
        )
    )
    if severity == Severity.WARN:
        actions.append(
            SuggestedAction(
                action=ResolutionAction.IGNORE_ONCE,
                description="Ignore this warning once and continue",
            )
        )
    if severity == Severity.BLOCK and signal_type != SignalType.QUALITY_WARNING:
        actions.append(
            SuggestedAction(
                action=ResolutionAction.ABORT,
                description="Stop the task before more damage is done",
                requires_confirmation=True,
                impact="high",
            )
        )
    return tuple(actions)


class SignalDecisionResolver:
    """Turn validation signals into a single protocol decision.

    Keeps the pending signals of the current task, a history of resolved
    signals and the set of rules the user chose to ignore. ``reset()``
    clears everything except the ignored rules.

    Args:
        auto_rollback_threshold: Pending unresolved signals that force a rollback
    """

    def __init__(self, auto_rollback_threshold: int = 3) -> None:
        self.logger = logging.getLogger(__name__)
        self.auto_rollback_threshold = auto_rollback_threshold
        self.pending: dict[str, ValidationSignal] = {}
        self.history: list[ValidationSignal] = []
        self.ignored_rules: set[str] = set()

    def create_signal(
        self, result: ValidationCheckResult, context: ValidationContext
    ) -> ValidationSignal:
        signal_type = classify_signal_type(result)
        signal = ValidationSignal(
            type=signal_type,
            rule_id=result.rule_id or "unknown",
            rule_name=result.rule_name or result.rule_id or "unknown",
            severity=result.severity,
            check_result=result,
            context=context,
            suggested_actions=suggested_actions(result.severity, signal_type, result),
        )
        self.pending[signal.id] = signal
        return signal

    def signals_from(
        self, results: list[ValidationCheckResult], context: ValidationContext
    ) -> list[ValidationSignal]:
        return [self.create_signal(r, context) for r in results if not r.passed]

    def auto_decide(self, signal: ValidationSignal) -> tuple[ResolutionAction, str]:
        """Pick the handling for one signal.

        Returns:
            The chosen action and a short reason
        """
        result = signal.check_result
        if signal.rule_id in self.ignored_rules:
            return ResolutionAction.IGNORE_RULE, "Rule was marked as ignored"

        if result.recommended is not None:
            return (
                _FROM_RECOMMENDED[result.recommended],
                f"Rule recommends {result.recommended.value}",
            )

        if result.suggested_patch and self._fixed_before(signal.rule_id):
            return ResolutionAction.FIX_AND_RETRY, "A fix for this rule worked before"

        if len(self.pending) >= self.auto_rollback_threshold:
            return (
                ResolutionAction.ROLLBACK,
                f"{len(self.pending)} unresolved validation failures",
            )

        if signal.severity == Severity.BLOCK:
            action = _BLOCK_POLICY.get(signal.type)
            if action is None:
                action = (
                    ResolutionAction.FIX_AND_RETRY
                    if result.suggested_patch
                    else ResolutionAction.ROLLBACK
                )
            return action, f"Blocking {signal.type.value}"

        if result.suggested_patch and signal.type in (
            SignalType.DATA_INTEGRITY,
            SignalType.SEMANTIC_ERROR,
        ):
            return ResolutionAction.FIX_AND_RETRY, "Warning with an available fix"
        return ResolutionAction.IGNORE_ONCE, "Warning only"

    def resolve(self, signals: list[ValidationSignal]) -> SignalDecision:
        """Combine the signals of one step into a single decision."""
        if not signals:
            return SignalDecision(action=DecisionAction.CONTINUE, reason="No signals")

        chosen = [(signal, *self.auto_decide(signal)) for signal in signals]
        winner = min(chosen, key=lambda item: ACTION_PRIORITY.index(item[1]))[1]
        selected = [(s, reason) for s, action, reason in chosen if action == winner]

        decision = SignalDecision(
            action=_TO_DECISION[winner],
            reason="; ".join(f"{s.message} ({reason})" for s, reason in selected),
            signals=[s for s, _ in selected],
            confidence=0.9 if winner != ResolutionAction.ASK_USER else 0.7,
        )
        if winner == ResolutionAction.ASK_USER:
            decision.question = self.format_user_message([s for s, _ in selected])
        elif winner == ResolutionAction.FIX_AND_RETRY:
            patch: dict = {}
            for signal, _ in selected:
                patch.update(signal.check_result.suggested_patch or {})
            decision.patch = patch or None

        self.logger.info(
            f"Resolved {len(signals)} signal(s) to {decision.action.value}: {decision.reason}"
        )
        return decision

    def record_resolution(
        self,
        signal: ValidationSignal,
        action: ResolutionAction,
        success: bool,
        reasoning: str,
    ) -> ValidationSignal:
        """Attach a resolution record and move the signal into history."""
        resolved = signal.model_copy(
            update={
                "resolution": SignalResolution(
                    action=action, success=success, reasoning=reasoning
                )
            }
        )
        self.pending.pop(signal.id, None)
        self.history.append(resolved)
        return resolved

    def record_decision(self, decision: SignalDecision, success: bool) -> None:
        action = {
            DecisionAction.ABORT: ResolutionAction.ABORT,
            DecisionAction.ASK_USER: ResolutionAction.ASK_USER,
            DecisionAction.ROLLBACK_AND_REPLAN: ResolutionAction.ROLLBACK,
            DecisionAction.FIX_AND_RETRY: ResolutionAction.FIX_AND_RETRY,
            DecisionAction.CONTINUE: ResolutionAction.IGNORE_ONCE,
        }[decision.action]
        for signal in decision.signals:
            self.record_resolution(signal, action, success, decision.reason)
        # Outranked signals of the same step are settled by the same decision
        steps = {s.context.step_id for s in decision.signals}
        for signal in list(self.pending.values()):
            if signal.context.step_id in steps:
                self.record_resolution(signal, action, success, decision.reason)

    def ignore_rule(self, rule_id: str) -> None:
        self.ignored_rules.add(rule_id)

    def unignore_rule(self, rule_id: str) -> None:
        self.ignored_rules.discard(rule_id)

    def reset(self) -> None:
        self.pending.clear()
        self.history.clear()

    def format_user_message(self, signals: list[ValidationSignal]) -> str:
        """Merge the messages of several signals into one question."""
        lines = ["A problem came up while executing the task:"]
        for signal in signals:
            lines.append(f"- {signal.message}")
            if signal.check_result.suggested_fix:
                lines.append(f"  Suggestion: {signal.check_result.suggested_fix}")
        lines.append("")
        lines.append("How should I proceed? Reply with one of:")
        lines.append("1. proceed - continue anyway")
        lines.append("2. rollback - undo the changes")
        lines.append("3. abort - stop the task")
        return "\n".join(lines)

    def _fixed_before(self, rule_id: str) -> bool:
        return any(
            s.rule_id == rule_id
            and s.resolution is not None
            and s.resolution.action == ResolutionAction.FIX_AND_RETRY
            and s.resolution.success
            for s in self.history
        )
