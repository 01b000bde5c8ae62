"""Synthesized ``request.cf`` properties.

The edge platform attaches geo, network and TLS facts to every incoming
request. Locally there is no edge, so plausible fixed values are used.
"""
from typing import Any, Dict


def make_incoming_request_cf_properties(http_protocol: str = "HTTP/1.1") -> Dict[str, Any]:
    return {
        "asn": 395747,
        "asOrganization": "Local Development",
        "colo": "DFW",
        "country": "US",
        "city": "Austin",
        "continent": "NA",
        "latitude": "30.27130",
        "longitude": "-97.74260",
        "postalCode": "78701",
        "metroCode": "635",
        "region": "Texas",
        "regionCode": "TX",
        "timezone": "America/Chicago",
        "httpProtocol": http_protocol,
        "requestPriority": "weight=16;exclusive=0",
        "tlsVersion": "TLSv1.3",
        "tlsCipher": "AEAD-AES128-GCM-SHA256",
        "tlsClientAuth": {
            "certPresented": "0",
            "certVerified": "NONE",
            "certRevoked": "0",
        },
        "clientTcpRtt": 22,
        "clientAcceptEncoding": "gzip, deflate, br",
        "edgeRequestKeepAliveStatus": 1,
    }
