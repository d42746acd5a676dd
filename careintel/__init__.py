"""Care intelligence pipeline.

Turns an append-only feed of care observations into baselines, anomalies,
risk scores, correlated compound events and a prioritized issue queue.
Everything produced here is advisory and links back to the observations
that justify it.
"""
