"""Research pattern detection: rules, evaluators, actions and jobs."""
