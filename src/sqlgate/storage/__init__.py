"""Connection pooling and query execution against configured databases."""
