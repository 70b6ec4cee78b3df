"""
Client-side logic of the administrative console: an HTTP client for the API,
the data grid controller behind every listing and the form controller behind
every create/edit dialog. Rendering is left to the caller.
"""
