"""CREATE TABLE statements for profiles, templates, generations, and the ledger."""

PROFILES = """
CREATE TABLE profiles (
    id              UUID PRIMARY KEY,
    username        VARCHAR(50) UNIQUE,
    first_name      VARCHAR(100),
    last_name       VARCHAR(100),
    avatar_url      VARCHAR(500),
    role            VARCHAR(30),
    credit_balance  INTEGER NOT NULL DEFAULT 0
                    CONSTRAINT ck_profile_balance_nonneg CHECK (credit_balance >= 0),
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

TEMPLATES = """
CREATE TABLE templates (
    id           UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    slug         VARCHAR(100) NOT NULL UNIQUE,
    name         VARCHAR(200) NOT NULL,
    description  TEXT,
    prompt       TEXT NOT NULL,
    credit_cost  INTEGER NOT NULL DEFAULT 1
                 CONSTRAINT ck_template_cost_nonneg CHECK (credit_cost >= 0),
    is_active    BOOLEAN NOT NULL DEFAULT TRUE,
    metadata     JSONB,
    created_at   TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at   TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

GENERATIONS = """
CREATE TABLE generations (
    id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id             UUID NOT NULL REFERENCES profiles(id),
    template_id         UUID REFERENCES templates(id),
    status              VARCHAR(20) NOT NULL DEFAULT 'processing'
                        CONSTRAINT ck_generation_status
                        CHECK (status IN ('processing', 'completed', 'failed')),
    input_images        TEXT[] NOT NULL
                        CONSTRAINT ck_generation_two_inputs
                        CHECK (cardinality(input_images) = 2),
    output_image        VARCHAR(500),
    credits_charged     INTEGER NOT NULL,
    prompt_used         TEXT,
    error_message       TEXT,
    processing_time_ms  INTEGER,
    metadata            JSONB,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT ck_generation_output_iff_completed
        CHECK ((status = 'completed') = (output_image IS NOT NULL)),
    CONSTRAINT ck_generation_error_iff_failed
        CHECK ((status = 'failed') = (error_message IS NOT NULL))
);
"""

CREDIT_TRANSACTIONS = """
CREATE TABLE credit_transactions (
    id             UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id        UUID NOT NULL REFERENCES profiles(id),
    amount         INTEGER NOT NULL,
    type           VARCHAR(30) NOT NULL
                   CONSTRAINT ck_credit_txn_type
                   CHECK (type IN (
                       'generation','refund','purchase',
                       'bonus','admin_adjustment'
                   )),
    generation_id  UUID REFERENCES generations(id),
    description    TEXT,
    metadata       JSONB,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

ALL = [
    PROFILES,
    TEMPLATES,
    GENERATIONS,
    CREDIT_TRANSACTIONS,
]
