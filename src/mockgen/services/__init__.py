"""Domain services for generation, payments and resilience."""
