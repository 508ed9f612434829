# marketops/common/metrics.py
from prometheus_client import Counter, Histogram

# -------------------------------------------------------
#  Policy engine
# -------------------------------------------------------

POLICY_VALIDATIONS = Counter(
    "marketops_policy_validations_total",
    "Policy validation calls by checkpoint and verdict",
    ["checkpoint", "verdict"],
)
POLICY_VIOLATIONS = Counter(
    "marketops_policy_violations_total",
    "Policy violations by kind and severity",
    ["kind", "severity"],
)
CHECKER_FAULTS = Counter(
    "marketops_policy_checker_faults_total",
    "Checkers that raised and were treated as no result",
    ["kind"],
)
VALIDATION_LATENCY = Histogram(
    "marketops_policy_validation_seconds",
    "Policy validation latency (seconds)",
    buckets=(0.005, 0.01, 0.05, 0.1, 0.3, 0.5, 1.0, 3.0),
)

# -------------------------------------------------------
#  Task lifecycle
# -------------------------------------------------------

TASK_OUTCOMES = Counter(
    "marketops_task_outcomes_total",
    "Task workflow terminal outcomes",
    ["outcome"],
)
CONNECTOR_RATE_LIMITED = Counter(
    "marketops_connector_rate_limited_total",
    "Executions refused by connector hourly/daily limits",
    ["window"],
)
EMERGENCY_STOPS = Counter(
    "marketops_emergency_stops_total",
    "Emergency stops executed",
)
