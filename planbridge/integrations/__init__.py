"""planbridge.integrations: external store gateway modules.

Services never query governance tables directly; every read and write goes
through the gateway singleton so that:
  - driver failures surface as StoreUnavailableError
  - store-side validation failures surface as WriteConflictError
  - failed round trips are logged in one place

Current gateways:
  governance_store.GovernanceStore: milestones, deliverables, checklist tasks
"""
