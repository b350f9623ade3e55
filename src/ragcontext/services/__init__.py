"""Service layer orchestrations for ragcontext."""
