"""Seed data INSERT statements."""

TEMPLATES = """
INSERT INTO templates (slug, name, description, prompt, credit_cost, is_active)
VALUES
    ('hug-younger-self',
     'Hug Your Younger Self',
     'Your present self embracing your younger self in one photo.',
     'A warm, photorealistic image of the adult person from the first photo '
     'hugging the child from the second photo. Preserve both faces, match the '
     'lighting, soft natural background.',
     1, TRUE);
"""

ALL = [TEMPLATES]
