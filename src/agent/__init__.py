"""Agent autonomy: policy, approvals, execution, loops and planning."""
