from enricher.src.processing.entity_cache import CatalogSnapshot, RestrictionPolicy
from enricher.src.processing.prompts import (
    DEFAULT_SYSTEM_PROMPT,
    build_system_prompt,
    prompt_tags_fragment,
)

SNAPSHOT = CatalogSnapshot(tags=["Tax", "Home"], correspondents=["ACME"], document_types=["Invoice"])


def test_default_prompt_carries_contract_and_restrictions(make_settings):
    settings = make_settings(RESTRICT_TO_EXISTING_TAGS=True)
    prompt = build_system_prompt(settings, SNAPSHOT, RestrictionPolicy.from_settings(settings), {})

    assert prompt.startswith(DEFAULT_SYSTEM_PROMPT)
    assert "tags must be chosen from Tax, Home" in prompt
    assert "correspondent from any value" in prompt
    assert '"custom_fields": {}' in prompt
    assert "%" not in prompt


def test_schema_placeholder_is_filled(make_settings):
    settings = make_settings(SYSTEM_PROMPT="Describe the file. Schema: %JSON_SCHEMA%")
    prompt = build_system_prompt(settings, SNAPSHOT, RestrictionPolicy(), {"type": "object"})

    assert prompt == 'Describe the file. Schema: {"type":"object"}'


def test_existing_data_and_external_context(make_settings):
    settings = make_settings(USE_EXISTING_DATA=True)
    prompt = build_system_prompt(settings, SNAPSHOT, RestrictionPolicy(), {}, external_data="Customer no. 42")

    assert prompt.startswith("Prefer these existing values")
    assert "Existing correspondents: ACME" in prompt
    assert prompt.endswith("Additional context from external API:\nCustomer no. 42")


def test_override_prompt_skips_existing_data(make_settings):
    settings = make_settings(USE_EXISTING_DATA=True)
    prompt = build_system_prompt(settings, SNAPSHOT, RestrictionPolicy(), {}, override_prompt="Only the title.")
    assert prompt.startswith("Only the title.")


def test_custom_fields_are_listed(make_settings):
    settings = make_settings(AI_CUSTOM_FIELDS='[{"name": "Amount", "data_type": "monetary", "description": "Total"}]')
    prompt = build_system_prompt(settings, SNAPSHOT, RestrictionPolicy(), {})
    assert '"Amount": "Total"' in prompt


def test_prompt_tags_fragment(make_settings):
    assert prompt_tags_fragment(make_settings()) is None
    fragment = prompt_tags_fragment(make_settings(USE_PROMPT_TAGS=True, PROMPT_TAGS="Tax, Home"))
    assert fragment.endswith("Tax, Home\n")
