"""All CREATE INDEX statements for the initial schema."""

ALL = [
    # generations
    "CREATE INDEX idx_generations_user ON generations(user_id, created_at DESC);",
    "CREATE INDEX idx_generations_processing ON generations(created_at) "
    "WHERE status = 'processing';",
    # credit_transactions
    "CREATE INDEX idx_credit_txn_user ON credit_transactions(user_id, created_at DESC);",
    # At most one charge and one refund per generation.
    "CREATE UNIQUE INDEX uq_credit_txn_generation_type "
    "ON credit_transactions(generation_id, type) WHERE generation_id IS NOT NULL;",
    # templates
    "CREATE INDEX idx_templates_active ON templates(credit_cost) WHERE is_active = TRUE;",
]
