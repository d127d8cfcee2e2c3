"""Trigger functions and trigger DDL for the initial schema."""

# ---- Trigger functions ----

FN_RAISE_IMMUTABLE = """
CREATE OR REPLACE FUNCTION raise_immutable_error()
RETURNS TRIGGER AS $$
BEGIN
    RAISE EXCEPTION 'Rows in table % are immutable', TG_TABLE_NAME;
END;
$$ LANGUAGE plpgsql;
"""

FN_GUARD_TERMINAL_STATUS = """
CREATE OR REPLACE FUNCTION guard_terminal_generation_status()
RETURNS TRIGGER AS $$
BEGIN
    IF OLD.status IN ('completed', 'failed')
    AND NEW.status IS DISTINCT FROM OLD.status
    THEN
        RAISE EXCEPTION 'Generation % is already %', OLD.id, OLD.status;
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

FUNCTIONS_ALL = [
    FN_RAISE_IMMUTABLE,
    FN_GUARD_TERMINAL_STATUS,
]

# ---- Triggers ----

TRIGGERS_ALL = [
    "CREATE TRIGGER trg_credit_transactions_immutable "
    "BEFORE UPDATE OR DELETE ON credit_transactions "
    "FOR EACH ROW EXECUTE FUNCTION raise_immutable_error();",

    "CREATE TRIGGER trg_generations_terminal_status "
    "BEFORE UPDATE ON generations "
    "FOR EACH ROW EXECUTE FUNCTION guard_terminal_generation_status();",
]
