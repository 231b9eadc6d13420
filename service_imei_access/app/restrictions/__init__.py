"""
Restriction resolution package.

Defines the restriction model and the two resolvers used by the IMEI
Access service:

- models: Restriction, targets, technicians, tags, callers and API models.
- engine: Validity filter, list-mode inference and single-technician
  resolution.
- cumulative: Reseller-wide aggregation for administrative callers.

Resolvers are pure over the restriction and tag snapshots handed to them;
fetching those snapshots is the service's job.
"""
