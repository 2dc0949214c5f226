"""Workflows whose steps are recorded at the server so that a run can be resumed."""