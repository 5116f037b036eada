"""Redis Lua scripts for sliding window rate limiting.

These scripts provide atomic operations so that concurrent callers in
separate processes can never both observe spare quota for the same key.
"""

# Atomic sliding-window-log check-and-record.
#
# KEYS[1]  sorted set of hits, scored by arrival epoch-ms
# ARGV[1]  now (epoch ms)
# ARGV[2]  window_ms
# ARGV[3]  max_requests
# ARGV[4]  member suffix, unique per call, so same-millisecond hits never collide
#
# Returns {success, limit, remaining, reset_time, retry_after, total_hits, window_start}
SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local now = tonumber(ARGV[1])
    local window_ms = tonumber(ARGV[2])
    local max_requests = tonumber(ARGV[3])
    local member = ARGV[1] .. ':' .. ARGV[4]
    local window_start = now - window_ms

    -- Expire hits that fell out of the window
    redis.call('ZREMRANGEBYSCORE', key, 0, window_start)

    local current_count = redis.call('ZCARD', key)

    if current_count >= max_requests then
        local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
        local retry_after = 0
        if #oldest > 0 then
            retry_after = math.ceil((tonumber(oldest[2]) + window_ms - now) / 1000)
            if retry_after < 0 then
                retry_after = 0
            end
        end
        return {0, max_requests, 0, now + window_ms, retry_after, current_count, window_start}
    end

    redis.call('ZADD', key, now, member)
    redis.call('PEXPIRE', key, window_ms)

    local total_hits = current_count + 1
    return {1, max_requests, max_requests - total_hits, now + window_ms, 0, total_hits, window_start}
"""

SLIDING_WINDOW_RESULT_FIELDS = (
    "success",
    "limit",
    "remaining",
    "reset_time",
    "retry_after",
    "total_hits",
    "window_start",
)
