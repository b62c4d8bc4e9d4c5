"""Cross-question survey answer equivalence: offline clustering and read-time expansion."""
