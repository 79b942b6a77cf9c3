# /app/utils/metrics.py

from prometheus_client import Counter, Gauge, Histogram

# This file defines all Prometheus metrics used for application monitoring.
# Centralizing them here makes them easy to find and manage.

# Flow Runtime Metrics
message_counter = Counter('whatsapp_messages_total', 'Total inbound messages processed', ['status', 'message_type'])
flows_triggered_counter = Counter('flows_triggered_total', 'Flow sessions started', ['trigger_type'])
steps_executed_counter = Counter('flow_steps_executed_total', 'Flow steps executed', ['step_type'])
sessions_completed_counter = Counter('flow_sessions_completed_total', 'Flow sessions completed', ['reason'])
reply_resolution_counter = Counter('flow_reply_resolutions_total', 'Reply resolutions', ['outcome'])
session_conflicts_counter = Counter('flow_session_conflicts_total', 'Rejected session compare-and-swap writes', ['operation'])
actions_dispatched_counter = Counter('flow_actions_dispatched_total', 'Actions handed to the dispatcher', ['action_type', 'status'])
wait_resumes_counter = Counter('flow_wait_resumes_total', 'Wait step resumes', ['status'])

# AI Metrics
ai_requests_counter = Counter('ai_requests_total', 'Total AI requests', ['model', 'status'])
ai_turns_counter = Counter('ai_agent_turns_total', 'AI delegate turns', ['outcome'])

# Performance Metrics
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])
cache_operations = Counter('cache_operations_total', 'Cache operations', ['operation', 'status'])
circuit_state_gauge = Gauge('circuit_breaker_state', 'Circuit state per dependency: 0 closed, 1 half-open, 2 open', ['name'])

# Security Metrics
webhook_signature_counter = Counter('webhook_signature_verifications_total', 'Webhook signature verifications', ['status'])
