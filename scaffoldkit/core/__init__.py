"""Engine components: schema, conditions, rendering, aggregation, materialization."""
