"""
Core sampling and estimation layer.

This package contains:
- strata: composite stratification keys per respondent
- partitioner: stratified, non-overlapping wave allocation and drift checks
- scales: Likert recoding and composite ideological scales
- aggregator: weighted means, standard errors and effective n
- gap_analyzer: gender gaps per cohort level, plus heterogeneity
- trend: longitudinal gap series across waves
- pipeline: one end-to-end generation run
- data_loader / metadata_loader: boundary adapters for files and URLs
"""
