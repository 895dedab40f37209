from prometheus_client import Counter, Histogram

# Initiation
PAYMENT_INITIATED = Counter("agripay_payment_initiations_total", "STK push initiation attempts", ["result"])

# Terminal outcomes, labelled by which path applied them
PAYMENT_SUCCESS = Counter("agripay_payments_success_total", "Payments settled as completed", ["source"])
PAYMENT_FAILURE = Counter("agripay_payments_failure_total", "Payments settled as failed or cancelled", ["source"])

# Provider callbacks
CALLBACKS_RECEIVED = Counter("agripay_mpesa_callbacks_total", "M-Pesa callbacks received", ["outcome"])

# Gateway
TOKEN_REFRESHES = Counter("agripay_mpesa_token_refreshes_total", "Access token exchanges performed", ["result"])
GATEWAY_LATENCY = Histogram("agripay_mpesa_gateway_latency_seconds", "Latency of Daraja API calls", ["operation"])
