# =============================================================================
# Models Package: Pydantic V2 Schemas
# =============================================================================
# Typed step contracts and the final ResearchReport of the research
# workflow. Internal pipeline structures (chunks, records, search results)
# are plain dataclasses in the services that own them.
# =============================================================================
