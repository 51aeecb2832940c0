"""Constants for the scraping service."""


class ScrapeErrorCode:
    """Error codes persisted verbatim in businesses.scrape_error."""

    DIRECTORY_SITE_SKIPPED = "DIRECTORY_SITE_SKIPPED"
    DOMAIN_PREVIOUSLY_FAILED = "DOMAIN_PREVIOUSLY_FAILED"
    DOMAIN_NOT_FOUND = "DOMAIN_NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    ACCESS_DENIED = "ACCESS_DENIED"
    PAGE_NOT_FOUND = "PAGE_NOT_FOUND"
    SERVER_ERROR = "SERVER_ERROR"
    NO_CONTACT_INFO_FOUND = "NO_CONTACT_INFO_FOUND"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


# Listing sites, social networks and marketplaces. Their contact details
# belong to the directory, not the business.
DIRECTORY_DOMAINS = [
    "yelp.com", "google.com", "facebook.com", "instagram.com", "twitter.com",
    "linkedin.com", "yellowpages.com", "whitepages.com", "mapquest.com",
    "tripadvisor.com", "foursquare.com", "bbb.org", "angieslist.com",
    "thumbtack.com", "homeadvisor.com", "houzz.com", "zillow.com", "trulia.com",
    "realtor.com", "apartments.com", "rentals.com", "opentable.com", "resy.com",
    "seamless.com", "grubhub.com", "doordash.com", "ubereats.com",
    "postmates.com", "wikipedia.org", "nextdoor.com", "merchantcircle.com",
    "manta.com", "superpages.com", "local.com", "citysearch.com", "kudzu.com",
    "porch.com", "usnews.com", "healthgrades.com", "vitals.com", "zocdoc.com",
    "webmd.com",
]

# Probed in order. The first entry is the home page.
CONTACT_PATHS = [
    "",
    "/contact",
    "/contact/",
    "/contact-us",
    "/contact-us/",
    "/contactus",
    "/about",
    "/about/",
    "/about-us",
    "/about-us/",
]

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
