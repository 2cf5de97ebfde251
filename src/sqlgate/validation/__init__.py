"""Configuration-chain and database-schema validation of declared queries."""
