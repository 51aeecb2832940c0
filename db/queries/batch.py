"""
Batch SQL queries for unnest / executemany operations.

These use positional parameters ($1, $2, etc.) required by asyncpg.
Kept separate from aiosql .sql files which use named parameters.
"""

# Insert discovered businesses; existing place_ids are left untouched.
# Params: parallel arrays (place_id, name, formatted_address, latitude, longitude,
#         rating, user_ratings_total, price_level, types, business_type, city,
#         state, postal_code). types is a comma-joined string per row since
#         unnest flattens nested arrays.
# Returns: place_id of each row actually inserted.
INSERT_BUSINESSES = """
INSERT INTO scrapenation.businesses (
    place_id, name, formatted_address, latitude, longitude, rating,
    user_ratings_total, price_level, types, business_type, city, state, postal_code
)
SELECT
    t.place_id, t.name, t.formatted_address, t.latitude, t.longitude, t.rating,
    t.user_ratings_total, t.price_level,
    COALESCE(string_to_array(NULLIF(t.types, ''), ','), '{}'),
    t.business_type, t.city, t.state, t.postal_code
FROM unnest(
    $1::text[], $2::text[], $3::text[], $4::float8[], $5::float8[], $6::float4[],
    $7::int[], $8::int[], $9::text[], $10::text[], $11::text[], $12::text[], $13::text[]
) AS t(
    place_id, name, formatted_address, latitude, longitude, rating,
    user_ratings_total, price_level, types, business_type, city, state, postal_code
)
ON CONFLICT (place_id) DO NOTHING
RETURNING place_id
"""

# Link businesses to a job. was_reused is true unless this job inserted the row.
# Params: (job_id, place_ids, new_place_ids)
LINK_JOB_BUSINESSES = """
INSERT INTO scrapenation.job_businesses (job_id, business_id, was_reused)
SELECT $1, b.id, NOT (b.place_id = ANY($3::text[]))
FROM scrapenation.businesses b
WHERE b.place_id = ANY($2::text[])
ON CONFLICT (job_id, business_id) DO NOTHING
"""

# Grant the job owner access to businesses.
# Params: (user_id, job_id, place_ids)
GRANT_USER_BUSINESSES = """
INSERT INTO scrapenation.user_businesses (user_id, business_id, job_id)
SELECT $1, b.id, $2
FROM scrapenation.businesses b
WHERE b.place_id = ANY($3::text[])
ON CONFLICT (user_id, business_id) DO NOTHING
"""

# Save a domain scrape outcome. A stored email is never overwritten.
# Params: (business_id, email, phone, error)
BATCH_SAVE_SCRAPE_RESULTS = """
UPDATE scrapenation.businesses
SET domain_email = $2,
    domain_phone = COALESCE(domain_phone, $3),
    scrape_error = $4,
    scraped_at = NOW(),
    updated_at = NOW()
WHERE id = $1
  AND domain_email IS NULL
"""

# Params: (business_id, verified, status, details_json)
BATCH_SAVE_DOMAIN_EMAIL_VERIFICATION = """
UPDATE scrapenation.businesses
SET domain_email_verified = $2,
    domain_email_verify_status = $3,
    domain_email_verify_details = $4::jsonb,
    updated_at = NOW()
WHERE id = $1
"""

# Params: (business_id, verified, status, details_json)
BATCH_SAVE_SERP_EMAIL_VERIFICATION = """
UPDATE scrapenation.businesses
SET serp_email_verified = $2,
    serp_email_verify_status = $3,
    serp_email_verify_details = $4::jsonb,
    updated_at = NOW()
WHERE id = $1
"""
