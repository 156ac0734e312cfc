import unittest
# Import all test modules
from test_phase1 import TestSearchRequest, TestReplyParsing, TestInterfaces
from test_phase2 import TestCombineUrls, TestParseDescription, TestExtractServiceUrl
from test_phase3 import TestSoapBodies, TestSoapRequest
from test_phase4 import TestDiscover, TestDiscoveryTimeout, TestAvailability
from test_phase5 import TestPortMapping
from test_phase6 import TestDiscoveryOverLoopback, TestPeerWithoutUPnP

if __name__ == '__main__':
    unittest.main()
