"""DeepResearch - cited web research orchestration engine."""
