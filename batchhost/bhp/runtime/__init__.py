"""Interpreter-side half of BHP: loads the user handler and answers batches."""
