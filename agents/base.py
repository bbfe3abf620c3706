"""Base class for agents that talk to the LLM."""

import structlog

from core.cost import estimate_tokens

log = structlog.get_logger(__name__)


class BaseAgent:
    """Every LLM call goes through _call_llm so its cost lands in the ledger."""

    name = "base"
    description = "Base agent"

    def _call_llm(self, state, system_prompt, user_prompt, file_path=None,
                  call_kind="analysis", max_tokens=None, json_prefill=False):
        """Send one request; returns (reply_text, cost_usd).

        Token counts come from the provider when it reports them, otherwise
        they are estimated from the prompt and reply length.
        """
        llm = state.llm
        text = llm.send(system_prompt, user_prompt, max_tokens=max_tokens,
                        json_prefill=json_prefill)

        usage = llm.last_usage
        if usage:
            input_tokens = usage["input_tokens"]
            output_tokens = usage["output_tokens"]
        else:
            input_tokens = estimate_tokens(system_prompt + user_prompt)
            output_tokens = estimate_tokens(text)

        cost = state.ledger.record(input_tokens, output_tokens, llm.model,
                                   file_path=file_path, call_kind=call_kind)
        log.debug("llm_call", agent=self.name, kind=call_kind, file=file_path,
                  input_tokens=input_tokens, output_tokens=output_tokens, cost=round(cost, 5))
        return text, cost
