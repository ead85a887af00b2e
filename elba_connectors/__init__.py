"""elba SaaS connectors.

Synchronises the users of GitHub, Monday and Dropbox organisations into elba
with paginated, per-organisation sync jobs.
"""
