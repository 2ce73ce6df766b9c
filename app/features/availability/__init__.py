"""
Availability consensus feature package.

Everything related to collecting availability, ranking candidate windows,
holding them on calendars and turning the winner into an event lives in
this vertical slice: domain models, repositories, the aggregation pipeline,
services, arq jobs and the API router.
"""
