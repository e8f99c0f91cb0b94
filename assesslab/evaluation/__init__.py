"""Paper evaluation core: ports, config, extractors, evaluator and pipeline."""
