"""Budget policy: decides whether more LLM spend is allowed."""

import structlog

from config.defaults import DEFAULTS

log = structlog.get_logger(__name__)


class BudgetPolicy:
    """Spend gate over totals reported by the CostLedger.

    Decisions are made on the totals passed in, so a run can overshoot the
    hard cap by at most the cost of the call already in flight.
    """

    def __init__(self, max_budget_usd=None, warn_threshold=DEFAULTS["warn_threshold"],
                 max_cost_per_file=None, max_cost_per_iteration=None,
                 escalation_factor=DEFAULTS["escalation_factor"],
                 escalation_window=DEFAULTS["escalation_window"]):
        self.max_budget_usd = max_budget_usd
        self.warn_threshold = warn_threshold
        self.max_cost_per_file = max_cost_per_file
        self.max_cost_per_iteration = max_cost_per_iteration
        self.escalation_factor = escalation_factor
        self.escalation_window = escalation_window
        self.warned = False
        self.iteration_costs = {}   # file -> [cost, ...] in recorded order

    def allow(self, total_spent, file_spent=None):
        if self.max_cost_per_file is not None and file_spent is not None:
            if file_spent >= self.max_cost_per_file:
                log.warning("file_budget_reached", file_cost=round(file_spent, 4),
                            cap=self.max_cost_per_file)
                return False

        if self.max_budget_usd is None:
            return True

        if not self.warned and total_spent >= self.max_budget_usd * self.warn_threshold:
            self.warned = True
            log.warning("budget_warning", spent=round(total_spent, 4), cap=self.max_budget_usd,
                        percent=round(100 * total_spent / self.max_budget_usd, 1)
                        if self.max_budget_usd else 100.0)

        if total_spent >= self.max_budget_usd:
            log.error("budget_exceeded", spent=round(total_spent, 4), cap=self.max_budget_usd)
            return False
        return True

    def allow_iteration(self, file_path, iteration, iteration_cost, total_spent):
        """Record this iteration's cost, then decide whether to keep refining."""
        costs = self.iteration_costs.setdefault(file_path, [])
        costs.append(iteration_cost)

        if self.max_cost_per_iteration is not None and iteration_cost > self.max_cost_per_iteration:
            log.warning("iteration_cost_limit", file=file_path, iteration=iteration,
                        cost=round(iteration_cost, 4), cap=self.max_cost_per_iteration)
            return False

        if self.is_escalating(file_path):
            log.warning("escalating_iteration_costs", file=file_path, iteration=iteration,
                        recent=[round(c, 4) for c in costs[-self.escalation_window:]])
            return False

        return self.allow(total_spent)

    def is_escalating(self, file_path):
        """True when each of the last N costs rose by at least the escalation factor."""
        recent = self.iteration_costs.get(file_path, [])[-self.escalation_window:]
        if len(recent) < self.escalation_window:
            return False
        return all(
            recent[i - 1] > 0 and recent[i] >= recent[i - 1] * self.escalation_factor
            for i in range(1, len(recent))
        )

    def remaining(self, total_spent):
        if self.max_budget_usd is None:
            return None
        return max(0.0, self.max_budget_usd - total_spent)
