"""Training loops, schedulers, losses and run pipelines."""
