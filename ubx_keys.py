"""UBX configuration item database used by CFG-VALSET.

Each row is (name, key, value type): the name omits the "CFG-" prefix and
the value type is the UBX type code understood by ubx.FieldType.

The rows come from the ESP32 GNSS base station firmware's ublox.c, whose
parallel tables vcmd[] (names), vid[] (keys) and vprm[] (FU1/FI4/FR8...
type codes) follow the key list published with gpsd's ubxtool. To
regenerate, zip the three tables row by row, drop the "F" from each type
code, and keep the first of any rows repeated verbatim (the source lists
the MSGOUT-UBX_MON_TXBUF_* items twice). tests/test_ubx_keys.py checks that
names and keys stay unique and that each type width agrees with the size
bits of its key.
"""

CONFIG_ITEM_ROWS: tuple[tuple[str, int, str], ...] = (
    ("GEOFENCE-CONFLVL", 0x20240011, "U1"),
    ("GEOFENCE-USE_PIO", 0x10240012, "U1"),
    ("GEOFENCE-PINPOL", 0x20240013, "U1"),
    ("GEOFENCE-PIN", 0x20240014, "U1"),
    ("GEOFENCE-USE_FENCE1", 0x10240020, "U1"),
    ("GEOFENCE-FENCE1_LAT", 0x40240021, "I4"),
    ("GEOFENCE-FENCE1_LON", 0x40240022, "I4"),
    ("GEOFENCE-FENCE1_RAD", 0x40240023, "U4"),
    ("GEOFENCE-USE_FENCE2", 0x10240030, "U1"),
    ("GEOFENCE-FENCE2_LAT", 0x40240031, "I4"),
    ("GEOFENCE-FENCE2_LON", 0x40240032, "I4"),
    ("GEOFENCE-FENCE2_RAD", 0x40240033, "U4"),
    ("GEOFENCE-USE_FENCE3", 0x10240040, "U1"),
    ("GEOFENCE-FENCE3_LAT", 0x40240041, "I4"),
    ("GEOFENCE-FENCE3_LON", 0x40240042, "I4"),
    ("GEOFENCE-FENCE3_RAD", 0x40240043, "U4"),
    ("GEOFENCE-USE_FENCE4", 0x10240050, "U1"),
    ("GEOFENCE-FENCE4_LAT", 0x40240051, "I4"),
    ("GEOFENCE-FENCE4_LON", 0x40240052, "I4"),
    ("GEOFENCE-FENCE4_RAD", 0x40240053, "U4"),
    ("HW-ANT_CFG_VOLTCTRL", 0x10a3002e, "U1"),
    ("HW-ANT_CFG_SHORTDET", 0x10a3002f, "U1"),
    ("HW-ANT_CFG_SHORTDET_POL", 0x10a30030, "U1"),
    ("HW-ANT_CFG_OPENDET", 0x10a30031, "U1"),
    ("HW-ANT_CFG_OPENDET_POL", 0x10a30032, "U1"),
    ("HW-ANT_CFG_PWRDOWN", 0x10a30033, "U1"),
    ("HW-ANT_CFG_PWRDOWN_POL", 0x10a30034, "U1"),
    ("HW-ANT_CFG_RECOVER", 0x10a30035, "U1"),
    ("HW-ANT_SUP_SWITCH_PIN", 0x20a30036, "U1"),
    ("HW-ANT_SUP_SHORT_PIN", 0x20a30037, "U1"),
    ("HW-ANT_SUP_OPEN_PIN", 0x20a30038, "U1"),
    ("I2C-ADDRESS", 0x20510001, "U1"),
    ("I2C-EXTENDEDTIMEOUT", 0x10510002, "U1"),
    ("I2C-ENABLED", 0x10510003, "U1"),
    ("I2CINPROT-UBX", 0x10710001, "U1"),
    ("I2CINPROT-NMEA", 0x10710002, "U1"),
    ("I2CINPROT-RTCM2X", 0x10710003, "U1"),
    ("I2CINPROT-RTCM3X", 0x10710004, "U1"),
    ("I2COUTPROT-UBX", 0x10720001, "U1"),
    ("I2COUTPROT-NMEA", 0x10720002, "U1"),
    ("I2COUTPROT-RTCM3X", 0x10720004, "U1"),
    ("INFMSG-UBX_I2C", 0x20920001, "U1"),
    ("INFMSG-UBX_UART1", 0x20920002, "U1"),
    ("INFMSG-UBX_UART2", 0x20920003, "U1"),
    ("INFMSG-UBX_USB", 0x20920004, "U1"),
    ("INFMSG-UBX_SPI", 0x20920005, "U1"),
    ("INFMSG-NMEA_I2C", 0x20920006, "U1"),
    ("INFMSG-NMEA_UART1", 0x20920007, "U1"),
    ("INFMSG-NMEA_UART2", 0x20920008, "U1"),
    ("INFMSG-NMEA_USB", 0x20920009, "U1"),
    ("INFMSG-NMEA_SPI", 0x2092000a, "U1"),
    ("ITFM-BBTHRESHOLD", 0x20410001, "U1"),
    ("ITFM-CWTHRESHOLD", 0x20410002, "U1"),
    ("ITFM-ENABLE", 0x1041000d, "U1"),
    ("ITFM-ANTSETTING", 0x20410010, "U1"),
    ("ITFM-ENABLE_AUX", 0x10410013, "U1"),
    ("LOGFILTER-RECORD_ENA", 0x10de0002, "U1"),
    ("LOGFILTER-ONCE_PER_WAKE_UP_ENA", 0x10de0003, "U1"),
    ("LOGFILTER-APPLY_ALL_FILTERS", 0x10de0004, "U1"),
    ("LOGFILTER-MIN_INTERVAL", 0x30de0005, "U2"),
    ("LOGFILTER-TIME_THRS", 0x30de0006, "U2"),
    ("LOGFILTER-SPEED_THRS", 0x30de0007, "U2"),
    ("LOGFILTER-POSITION_THRS", 0x40de0008, "U4"),
    ("MOT-GNSSSPEED_THRS", 0x20250038, "U1"),
    ("MOT-GNSSDIST_THRS", 0x3025003b, "U2"),
    ("MSGOUT-NMEA_ID_DTM_I2C", 0x209100a6, "U1"),
    ("MSGOUT-NMEA_ID_DTM_SPI", 0x209100aa, "U1"),
    ("MSGOUT-NMEA_ID_DTM_UART1", 0x209100a7, "U1"),
    ("MSGOUT-NMEA_ID_DTM_UART2", 0x209100a8, "U1"),
    ("MSGOUT-NMEA_ID_DTM_USB", 0x209100a9, "U1"),
    ("MSGOUT-NMEA_ID_GBS_I2C", 0x209100dd, "U1"),
    ("MSGOUT-NMEA_ID_GBS_SPI", 0x209100e1, "U1"),
    ("MSGOUT-NMEA_ID_GBS_UART1", 0x209100de, "U1"),
    ("MSGOUT-NMEA_ID_GBS_UART2", 0x209100df, "U1"),
    ("MSGOUT-NMEA_ID_GBS_USB", 0x209100e0, "U1"),
    ("MSGOUT-NMEA_ID_GGA_I2C", 0x209100ba, "U1"),
    ("MSGOUT-NMEA_ID_GGA_SPI", 0x209100be, "U1"),
    ("MSGOUT-NMEA_ID_GGA_UART1", 0x209100bb, "U1"),
    ("MSGOUT-NMEA_ID_GGA_UART2", 0x209100bc, "U1"),
    ("MSGOUT-NMEA_ID_GGA_USB", 0x209100bd, "U1"),
    ("MSGOUT-NMEA_ID_GLL_I2C", 0x209100c9, "U1"),
    ("MSGOUT-NMEA_ID_GLL_SPI", 0x209100cd, "U1"),
    ("MSGOUT-NMEA_ID_GLL_UART1", 0x209100ca, "U1"),
    ("MSGOUT-NMEA_ID_GLL_UART2", 0x209100cb, "U1"),
    ("MSGOUT-NMEA_ID_GLL_USB", 0x209100cc, "U1"),
    ("MSGOUT-NMEA_ID_GNS_I2C", 0x209100b5, "U1"),
    ("MSGOUT-NMEA_ID_GNS_SPI", 0x209100b9, "U1"),
    ("MSGOUT-NMEA_ID_GNS_UART1", 0x209100b6, "U1"),
    ("MSGOUT-NMEA_ID_GNS_UART2", 0x209100b7, "U1"),
    ("MSGOUT-NMEA_ID_GNS_USB", 0x209100b8, "U1"),
    ("MSGOUT-NMEA_ID_GRS_I2C", 0x209100ce, "U1"),
    ("MSGOUT-NMEA_ID_GRS_SPI", 0x209100d2, "U1"),
    ("MSGOUT-NMEA_ID_GRS_UART1", 0x209100cf, "U1"),
    ("MSGOUT-NMEA_ID_GRS_UART2", 0x209100d0, "U1"),
    ("MSGOUT-NMEA_ID_GRS_USB", 0x209100d1, "U1"),
    ("MSGOUT-NMEA_ID_GSA_I2C", 0x209100bf, "U1"),
    ("MSGOUT-NMEA_ID_GSA_SPI", 0x209100c3, "U1"),
    ("MSGOUT-NMEA_ID_GSA_UART1", 0x209100c0, "U1"),
    ("MSGOUT-NMEA_ID_GSA_UART2", 0x209100c1, "U1"),
    ("MSGOUT-NMEA_ID_GSA_USB", 0x209100c2, "U1"),
    ("MSGOUT-NMEA_ID_GST_I2C", 0x209100d3, "U1"),
    ("MSGOUT-NMEA_ID_GST_SPI", 0x209100d7, "U1"),
    ("MSGOUT-NMEA_ID_GST_UART1", 0x209100d4, "U1"),
    ("MSGOUT-NMEA_ID_GST_UART2", 0x209100d5, "U1"),
    ("MSGOUT-NMEA_ID_GST_USB", 0x209100d6, "U1"),
    ("MSGOUT-NMEA_ID_GSV_I2C", 0x209100c4, "U1"),
    ("MSGOUT-NMEA_ID_GSV_SPI", 0x209100c8, "U1"),
    ("MSGOUT-NMEA_ID_GSV_UART1", 0x209100c5, "U1"),
    ("MSGOUT-NMEA_ID_GSV_UART2", 0x209100c6, "U1"),
    ("MSGOUT-NMEA_ID_GSV_USB", 0x209100c7, "U1"),
    ("MSGOUT-NMEA_ID_RMC_I2C", 0x209100ab, "U1"),
    ("MSGOUT-NMEA_ID_RMC_SPI", 0x209100af, "U1"),
    ("MSGOUT-NMEA_ID_RMC_UART1", 0x209100ac, "U1"),
    ("MSGOUT-NMEA_ID_RMC_UART2", 0x209100ad, "U1"),
    ("MSGOUT-NMEA_ID_RMC_USB", 0x209100ae, "U1"),
    ("MSGOUT-NMEA_ID_VLW_I2C", 0x209100e7, "U1"),
    ("MSGOUT-NMEA_ID_VLW_SPI", 0x209100eb, "U1"),
    ("MSGOUT-NMEA_ID_VLW_UART1", 0x209100e8, "U1"),
    ("MSGOUT-NMEA_ID_VLW_UART2", 0x209100e9, "U1"),
    ("MSGOUT-NMEA_ID_VLW_USB", 0x209100ea, "U1"),
    ("MSGOUT-NMEA_ID_VTG_I2C", 0x209100b0, "U1"),
    ("MSGOUT-NMEA_ID_VTG_SPI", 0x209100b4, "U1"),
    ("MSGOUT-NMEA_ID_VTG_UART1", 0x209100b1, "U1"),
    ("MSGOUT-NMEA_ID_VTG_UART2", 0x209100b2, "U1"),
    ("MSGOUT-NMEA_ID_VTG_USB", 0x209100b3, "U1"),
    ("MSGOUT-NMEA_ID_ZDA_I2C", 0x209100d8, "U1"),
    ("MSGOUT-NMEA_ID_ZDA_SPI", 0x209100dc, "U1"),
    ("MSGOUT-NMEA_ID_ZDA_UART1", 0x209100d9, "U1"),
    ("MSGOUT-NMEA_ID_ZDA_UART2", 0x209100da, "U1"),
    ("MSGOUT-NMEA_ID_ZDA_USB", 0x209100db, "U1"),
    ("MSGOUT-PUBX_ID_POLYP_I2C", 0x209100ec, "U1"),
    ("MSGOUT-PUBX_ID_POLYP_SPI", 0x209100f0, "U1"),
    ("MSGOUT-PUBX_ID_POLYP_UART1", 0x209100ed, "U1"),
    ("MSGOUT-PUBX_ID_POLYP_UART2", 0x209100ee, "U1"),
    ("MSGOUT-PUBX_ID_POLYP_USB", 0x209100ef, "U1"),
    ("MSGOUT-PUBX_ID_POLYS_I2C", 0x209100f1, "U1"),
    ("MSGOUT-PUBX_ID_POLYS_SPI", 0x209100f5, "U1"),
    ("MSGOUT-PUBX_ID_POLYS_UART1", 0x209100f2, "U1"),
    ("MSGOUT-PUBX_ID_POLYS_UART2", 0x209100f3, "U1"),
    ("MSGOUT-PUBX_ID_POLYS_USB", 0x209100f4, "U1"),
    ("MSGOUT-PUBX_ID_POLYT_I2C", 0x209100f6, "U1"),
    ("MSGOUT-PUBX_ID_POLYT_SPI", 0x209100fa, "U1"),
    ("MSGOUT-PUBX_ID_POLYT_UART1", 0x209100f7, "U1"),
    ("MSGOUT-PUBX_ID_POLYT_UART2", 0x209100f8, "U1"),
    ("MSGOUT-PUBX_ID_POLYT_USB", 0x209100f9, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1005_I2C", 0x209102bd, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1005_SPI", 0x209102c1, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1005_UART1", 0x209102be, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1005_UART2", 0x209102bf, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1005_USB", 0x209102c0, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1074_I2C", 0x2091035e, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1074_SPI", 0x20910362, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1074_UART1", 0x2091035f, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1074_UART2", 0x20910360, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1074_USB", 0x20910361, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1077_I2C", 0x209102cc, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1077_SPI", 0x209102d0, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1077_UART1", 0x209102cd, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1077_UART2", 0x209102ce, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1077_USB", 0x209102cf, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1087_I2C", 0x209102d1, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1084_SPI", 0x20910367, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1084_UART1", 0x20910364, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1084_UART2", 0x20910365, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1084_USB", 0x20910366, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1087_SPI", 0x209102d5, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1087_UART1", 0x209102d2, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1087_UART2", 0x209102d3, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1087_USB", 0x209102d4, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1094_I2C", 0x20910368, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1094_SPI", 0x2091036c, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1094_UART1", 0x20910369, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1094_UART2", 0x2091036a, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1094_USB", 0x2091036b, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1097_I2C", 0x20910318, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1097_SPI", 0x2091031c, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1097_UART1", 0x20910319, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1097_UART2", 0x2091031a, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1097_USB", 0x2091031b, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1124_I2C", 0x2091036d, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1124_SPI", 0x20910371, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1124_UART1", 0x2091036e, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1124_UART2", 0x2091036f, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1124_USB", 0x20910370, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1127_I2C", 0x209102d6, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1127_SPI", 0x209102da, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1127_UART1", 0x209102d7, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1127_UART2", 0x209102d8, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1127_USB", 0x209102d9, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1230_I2C", 0x20910303, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1230_SPI", 0x20910307, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1230_UART1", 0x20910304, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1230_UART2", 0x20910305, "U1"),
    ("MSGOUT-RTCM_3X_TYPE1230_USB", 0x20910306, "U1"),
    ("MSGOUT-RTCM_3X_TYPE4072_0_I2C", 0x209102fe, "U1"),
    ("MSGOUT-RTCM_3X_TYPE4072_0_SPI", 0x20910302, "U1"),
    ("MSGOUT-RTCM_3X_TYPE4072_0_UART1", 0x209102ff, "U1"),
    ("MSGOUT-RTCM_3X_TYPE4072_0_UART2", 0x20910300, "U1"),
    ("MSGOUT-RTCM_3X_TYPE4072_0_USB", 0x20910301, "U1"),
    ("MSGOUT-RTCM_3X_TYPE4072_1_I2C", 0x20910381, "U1"),
    ("MSGOUT-RTCM_3X_TYPE4072_1_SPI", 0x20910385, "U1"),
    ("MSGOUT-RTCM_3X_TYPE4072_1_UART1", 0x20910382, "U1"),
    ("MSGOUT-RTCM_3X_TYPE4072_1_UART2", 0x20910383, "U1"),
    ("MSGOUT-RTCM_3X_TYPE4072_1_USB", 0x20910384, "U1"),
    ("MSGOUT-UBX_LOG_INFO_I2C", 0x20910259, "U1"),
    ("MSGOUT-UBX_LOG_INFO_SPI", 0x2091025d, "U1"),
    ("MSGOUT-UBX_LOG_INFO_UART1", 0x2091025a, "U1"),
    ("MSGOUT-UBX_LOG_INFO_UART2", 0x2091025b, "U1"),
    ("MSGOUT-UBX_LOG_INFO_USB", 0x2091025c, "U1"),
    ("MSGOUT-UBX_MON_COMMS_I2C", 0x2091034f, "U1"),
    ("MSGOUT-UBX_MON_COMMS_SPI", 0x20910353, "U1"),
    ("MSGOUT-UBX_MON_COMMS_UART1", 0x20910350, "U1"),
    ("MSGOUT-UBX_MON_COMMS_UART2", 0x20910351, "U1"),
    ("MSGOUT-UBX_MON_COMMS_USB", 0x20910352, "U1"),
    ("MSGOUT-UBX_MON_HW2_I2C", 0x209101b9, "U1"),
    ("MSGOUT-UBX_MON_HW2_SPI", 0x209101bd, "U1"),
    ("MSGOUT-UBX_MON_HW2_UART1", 0x209101ba, "U1"),
    ("MSGOUT-UBX_MON_HW2_UART2", 0x209101bb, "U1"),
    ("MSGOUT-UBX_MON_HW2_USB", 0x209101bc, "U1"),
    ("MSGOUT-UBX_MON_HW3_I2C", 0x20910354, "U1"),
    ("MSGOUT-UBX_MON_HW3_SPI", 0x20910358, "U1"),
    ("MSGOUT-UBX_MON_HW3_UART1", 0x20910355, "U1"),
    ("MSGOUT-UBX_MON_HW3_UART2", 0x20910356, "U1"),
    ("MSGOUT-UBX_MON_HW3_USB", 0x20910357, "U1"),
    ("MSGOUT-UBX_MON_HW_I2C", 0x209101b4, "U1"),
    ("MSGOUT-UBX_MON_HW_SPI", 0x209101b8, "U1"),
    ("MSGOUT-UBX_MON_HW_UART1", 0x209101b5, "U1"),
    ("MSGOUT-UBX_MON_HW_UART2", 0x209101b6, "U1"),
    ("MSGOUT-UBX_MON_HW_USB", 0x209101b7, "U1"),
    ("MSGOUT-UBX_MON_IO_I2C", 0x209101a5, "U1"),
    ("MSGOUT-UBX_MON_IO_SPI", 0x209101a9, "U1"),
    ("MSGOUT-UBX_MON_IO_UART1", 0x209101a6, "U1"),
    ("MSGOUT-UBX_MON_IO_UART2", 0x209101a7, "U1"),
    ("MSGOUT-UBX_MON_IO_USB", 0x209101a8, "U1"),
    ("MSGOUT-UBX_MON_MSGPP_I2C", 0x20910196, "U1"),
    ("MSGOUT-UBX_MON_MSGPP_SPI", 0x2091019a, "U1"),
    ("MSGOUT-UBX_MON_MSGPP_UART1", 0x20910197, "U1"),
    ("MSGOUT-UBX_MON_MSGPP_UART2", 0x20910198, "U1"),
    ("MSGOUT-UBX_MON_MSGPP_USB", 0x20910199, "U1"),
    ("MSGOUT-UBX_MON_RF_I2C", 0x20910359, "U1"),
    ("MSGOUT-UBX_MON_RF_SPI", 0x2091035d, "U1"),
    ("MSGOUT-UBX_MON_RF_UART1", 0x2091035a, "U1"),
    ("MSGOUT-UBX_MON_RF_UART2", 0x2091035b, "U1"),
    ("MSGOUT-UBX_MON_RF_USB", 0x2091035c, "U1"),
    ("MSGOUT-UBX_MON_RXBUF_I2C", 0x209101a0, "U1"),
    ("MSGOUT-UBX_MON_RXBUF_SPI", 0x209101a4, "U1"),
    ("MSGOUT-UBX_MON_RXBUF_UART1", 0x209101a1, "U1"),
    ("MSGOUT-UBX_MON_RXBUF_UART2", 0x209101a2, "U1"),
    ("MSGOUT-UBX_MON_RXBUF_USB", 0x209101a3, "U1"),
    ("MSGOUT-UBX_MON_RXR_I2C", 0x20910187, "U1"),
    ("MSGOUT-UBX_MON_RXR_SPI", 0x2091018b, "U1"),
    ("MSGOUT-UBX_MON_RXR_UART1", 0x20910188, "U1"),
    ("MSGOUT-UBX_MON_RXR_UART2", 0x20910189, "U1"),
    ("MSGOUT-UBX_MON_RXR_USB", 0x2091018a, "U1"),
    ("MSGOUT-UBX_MON_TXBUF_I2C", 0x2091019b, "U1"),
    ("MSGOUT-UBX_MON_TXBUF_SPI", 0x2091019f, "U1"),
    ("MSGOUT-UBX_MON_TXBUF_UART1", 0x2091019c, "U1"),
    ("MSGOUT-UBX_MON_TXBUF_UART2", 0x2091019d, "U1"),
    ("MSGOUT-UBX_MON_TXBUF_USB", 0x2091019e, "U1"),
    ("MSGOUT-UBX_NAV_CLOCK_I2C", 0x20910065, "U1"),
    ("MSGOUT-UBX_NAV_CLOCK_SPI", 0x20910069, "U1"),
    ("MSGOUT-UBX_NAV_CLOCK_UART1", 0x20910066, "U1"),
    ("MSGOUT-UBX_NAV_CLOCK_UART2", 0x20910067, "U1"),
    ("MSGOUT-UBX_NAV_CLOCK_USB", 0x20910068, "U1"),
    ("MSGOUT-UBX_NAV_DOP_I2C", 0x20910038, "U1"),
    ("MSGOUT-UBX_NAV_DOP_SPI", 0x2091003c, "U1"),
    ("MSGOUT-UBX_NAV_DOP_UART1", 0x20910039, "U1"),
    ("MSGOUT-UBX_NAV_DOP_UART2", 0x2091003a, "U1"),
    ("MSGOUT-UBX_NAV_DOP_USB", 0x2091003b, "U1"),
    ("MSGOUT-UBX_NAV_EOE_I2C", 0x2091015f, "U1"),
    ("MSGOUT-UBX_NAV_EOE_SPI", 0x20910163, "U1"),
    ("MSGOUT-UBX_NAV_EOE_UART1", 0x20910160, "U1"),
    ("MSGOUT-UBX_NAV_EOE_UART2", 0x20910161, "U1"),
    ("MSGOUT-UBX_NAV_EOE_USB", 0x20910162, "U1"),
    ("MSGOUT-UBX_NAV_GEOFENCE_I2C", 0x209100a1, "U1"),
    ("MSGOUT-UBX_NAV_GEOFENCE_SPI", 0x209100a5, "U1"),
    ("MSGOUT-UBX_NAV_GEOFENCE_UART1", 0x209100a2, "U1"),
    ("MSGOUT-UBX_NAV_GEOFENCE_UART2", 0x209100a3, "U1"),
    ("MSGOUT-UBX_NAV_GEOFENCE_USB", 0x209100a4, "U1"),
    ("MSGOUT-UBX_NAV_HPPOSECEF_I2C", 0x2091002e, "U1"),
    ("MSGOUT-UBX_NAV_HPPOSECEF_SPI", 0x20910032, "U1"),
    ("MSGOUT-UBX_NAV_HPPOSECEF_UART1", 0x2091002f, "U1"),
    ("MSGOUT-UBX_NAV_HPPOSECEF_UART2", 0x20910030, "U1"),
    ("MSGOUT-UBX_NAV_HPPOSECEF_USB", 0x20910031, "U1"),
    ("MSGOUT-UBX_NAV_HPPOSLLH_I2C", 0x20910033, "U1"),
    ("MSGOUT-UBX_NAV_HPPOSLLH_SPI", 0x20910037, "U1"),
    ("MSGOUT-UBX_NAV_HPPOSLLH_UART1", 0x20910034, "U1"),
    ("MSGOUT-UBX_NAV_HPPOSLLH_UART2", 0x20910035, "U1"),
    ("MSGOUT-UBX_NAV_HPPOSLLH_USB", 0x20910036, "U1"),
    ("MSGOUT-UBX_NAV_ODO_I2C", 0x2091007e, "U1"),
    ("MSGOUT-UBX_NAV_ODO_SPI", 0x20910082, "U1"),
    ("MSGOUT-UBX_NAV_ODO_UART1", 0x2091007f, "U1"),
    ("MSGOUT-UBX_NAV_ODO_UART2", 0x20910080, "U1"),
    ("MSGOUT-UBX_NAV_ODO_USB", 0x20910081, "U1"),
    ("MSGOUT-UBX_NAV_ORB_I2C", 0x20910010, "U1"),
    ("MSGOUT-UBX_NAV_ORB_SPI", 0x20910014, "U1"),
    ("MSGOUT-UBX_NAV_ORB_UART1", 0x20910011, "U1"),
    ("MSGOUT-UBX_NAV_ORB_UART2", 0x20910012, "U1"),
    ("MSGOUT-UBX_NAV_ORB_USB", 0x20910013, "U1"),
    ("MSGOUT-UBX_NAV_POSECEF_I2C", 0x20910024, "U1"),
    ("MSGOUT-UBX_NAV_POSECEF_SPI", 0x20910028, "U1"),
    ("MSGOUT-UBX_NAV_POSECEF_UART1", 0x20910025, "U1"),
    ("MSGOUT-UBX_NAV_POSECEF_UART2", 0x20910026, "U1"),
    ("MSGOUT-UBX_NAV_POSECEF_USB", 0x20910027, "U1"),
    ("MSGOUT-UBX_NAV_POSLLH_I2C", 0x20910029, "U1"),
    ("MSGOUT-UBX_NAV_POSLLH_SPI", 0x2091002d, "U1"),
    ("MSGOUT-UBX_NAV_POSLLH_UART1", 0x2091002a, "U1"),
    ("MSGOUT-UBX_NAV_POSLLH_UART2", 0x2091002b, "U1"),
    ("MSGOUT-UBX_NAV_POSLLH_USB", 0x2091002c, "U1"),
    ("MSGOUT-UBX_NAV_PVT_I2C", 0x20910006, "U1"),
    ("MSGOUT-UBX_NAV_PVT_SPI", 0x2091000a, "U1"),
    ("MSGOUT-UBX_NAV_PVT_UART1", 0x20910007, "U1"),
    ("MSGOUT-UBX_NAV_PVT_UART2", 0x20910008, "U1"),
    ("MSGOUT-UBX_NAV_PVT_USB", 0x20910009, "U1"),
    ("MSGOUT-UBX_NAV_RELPOSNED_I2C", 0x2091008d, "U1"),
    ("MSGOUT-UBX_NAV_RELPOSNED_SPI", 0x20910091, "U1"),
    ("MSGOUT-UBX_NAV_RELPOSNED_UART1", 0x2091008e, "U1"),
    ("MSGOUT-UBX_NAV_RELPOSNED_UART2", 0x2091008f, "U1"),
    ("MSGOUT-UBX_NAV_RELPOSNED_USB", 0x20910090, "U1"),
    ("MSGOUT-UBX_NAV_SAT_I2C", 0x20910015, "U1"),
    ("MSGOUT-UBX_NAV_SAT_SPI", 0x20910019, "U1"),
    ("MSGOUT-UBX_NAV_SAT_UART1", 0x20910016, "U1"),
    ("MSGOUT-UBX_NAV_SAT_UART2", 0x20910017, "U1"),
    ("MSGOUT-UBX_NAV_SAT_USB", 0x20910018, "U1"),
    ("MSGOUT-UBX_NAV_SBAS_I2C", 0x2091006a, "U1"),
    ("MSGOUT-UBX_NAV_SBAS_SPI", 0x2091006e, "U1"),
    ("MSGOUT-UBX_NAV_SBAS_UART1", 0x2091006b, "U1"),
    ("MSGOUT-UBX_NAV_SBAS_UART2", 0x2091006c, "U1"),
    ("MSGOUT-UBX_NAV_SBAS_USB", 0x2091006d, "U1"),
    ("MSGOUT-UBX_NAV_SIG_I2C", 0x20910345, "U1"),
    ("MSGOUT-UBX_NAV_SIG_SPI", 0x20910349, "U1"),
    ("MSGOUT-UBX_NAV_SIG_UART1", 0x20910346, "U1"),
    ("MSGOUT-UBX_NAV_SIG_UART2", 0x20910347, "U1"),
    ("MSGOUT-UBX_NAV_SIG_USB", 0x20910348, "U1"),
    ("MSGOUT-UBX_NAV_STATUS_I2C", 0x2091001a, "U1"),
    ("MSGOUT-UBX_NAV_STATUS_SPI", 0x2091001e, "U1"),
    ("MSGOUT-UBX_NAV_STATUS_UART1", 0x2091001b, "U1"),
    ("MSGOUT-UBX_NAV_STATUS_UART2", 0x2091001c, "U1"),
    ("MSGOUT-UBX_NAV_STATUS_USB", 0x2091001d, "U1"),
    ("MSGOUT-UBX_NAV_SVIN_I2C", 0x20910088, "U1"),
    ("MSGOUT-UBX_NAV_SVIN_SPI", 0x2091008c, "U1"),
    ("MSGOUT-UBX_NAV_SVIN_UART1", 0x20910089, "U1"),
    ("MSGOUT-UBX_NAV_SVIN_UART2", 0x2091008a, "U1"),
    ("MSGOUT-UBX_NAV_SVIN_USB", 0x2091008b, "U1"),
    ("MSGOUT-UBX_NAV_TIMEBDS_I2C", 0x20910051, "U1"),
    ("MSGOUT-UBX_NAV_TIMEBDS_SPI", 0x20910055, "U1"),
    ("MSGOUT-UBX_NAV_TIMEBDS_UART1", 0x20910052, "U1"),
    ("MSGOUT-UBX_NAV_TIMEBDS_UART2", 0x20910053, "U1"),
    ("MSGOUT-UBX_NAV_TIMEBDS_USB", 0x20910054, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGAL_I2C", 0x20910056, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGAL_SPI", 0x2091005a, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGAL_UART1", 0x20910057, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGAL_UART2", 0x20910058, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGAL_USB", 0x20910059, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGLO_I2C", 0x2091004c, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGLO_SPI", 0x20910050, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGLO_UART1", 0x2091004d, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGLO_UART2", 0x2091004e, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGLO_USB", 0x2091004f, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGPS_I2C", 0x20910047, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGPS_SPI", 0x2091004b, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGPS_UART1", 0x20910048, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGPS_UART2", 0x20910049, "U1"),
    ("MSGOUT-UBX_NAV_TIMEGPS_USB", 0x2091004a, "U1"),
    ("MSGOUT-UBX_NAV_TIMELS_I2C", 0x20910060, "U1"),
    ("MSGOUT-UBX_NAV_TIMELS_SPI", 0x20910064, "U1"),
    ("MSGOUT-UBX_NAV_TIMELS_UART1", 0x20910061, "U1"),
    ("MSGOUT-UBX_NAV_TIMELS_UART2", 0x20910062, "U1"),
    ("MSGOUT-UBX_NAV_TIMELS_USB", 0x20910063, "U1"),
    ("MSGOUT-UBX_NAV_TIMEUTC_I2C", 0x2091005b, "U1"),
    ("MSGOUT-UBX_NAV_TIMEUTC_SPI", 0x2091005f, "U1"),
    ("MSGOUT-UBX_NAV_TIMEUTC_UART1", 0x2091005c, "U1"),
    ("MSGOUT-UBX_NAV_TIMEUTC_UART2", 0x2091005d, "U1"),
    ("MSGOUT-UBX_NAV_TIMEUTC_USB", 0x2091005e, "U1"),
    ("MSGOUT-UBX_NAV_VELECEF_I2C", 0x2091003d, "U1"),
    ("MSGOUT-UBX_NAV_VELECEF_SPI", 0x20910041, "U1"),
    ("MSGOUT-UBX_NAV_VELECEF_UART1", 0x2091003e, "U1"),
    ("MSGOUT-UBX_NAV_VELECEF_UART2", 0x2091003f, "U1"),
    ("MSGOUT-UBX_NAV_VELECEF_USB", 0x20910040, "U1"),
    ("MSGOUT-UBX_NAV_VELNED_I2C", 0x20910042, "U1"),
    ("MSGOUT-UBX_NAV_VELNED_SPI", 0x20910046, "U1"),
    ("MSGOUT-UBX_NAV_VELNED_UART1", 0x20910043, "U1"),
    ("MSGOUT-UBX_NAV_VELNED_UART2", 0x20910044, "U1"),
    ("MSGOUT-UBX_NAV_VELNED_USB", 0x20910045, "U1"),
    ("MSGOUT-UBX_RXM_MEASX_I2C", 0x20910204, "U1"),
    ("MSGOUT-UBX_RXM_MEASX_SPI", 0x20910208, "U1"),
    ("MSGOUT-UBX_RXM_MEASX_UART1", 0x20910205, "U1"),
    ("MSGOUT-UBX_RXM_MEASX_UART2", 0x20910206, "U1"),
    ("MSGOUT-UBX_RXM_MEASX_USB", 0x20910207, "U1"),
    ("MSGOUT-UBX_RXM_RAWX_I2C", 0x209102a4, "U1"),
    ("MSGOUT-UBX_RXM_RAWX_SPI", 0x209102a8, "U1"),
    ("MSGOUT-UBX_RXM_RAWX_UART1", 0x209102a5, "U1"),
    ("MSGOUT-UBX_RXM_RAWX_UART2", 0x209102a6, "U1"),
    ("MSGOUT-UBX_RXM_RAWX_USB", 0x209102a7, "U1"),
    ("MSGOUT-UBX_RXM_RLM_I2C", 0x2091025e, "U1"),
    ("MSGOUT-UBX_RXM_RLM_SPI", 0x20910262, "U1"),
    ("MSGOUT-UBX_RXM_RLM_UART1", 0x2091025f, "U1"),
    ("MSGOUT-UBX_RXM_RLM_UART2", 0x20910260, "U1"),
    ("MSGOUT-UBX_RXM_RLM_USB", 0x20910261, "U1"),
    ("MSGOUT-UBX_RXM_RTCM_I2C", 0x20910268, "U1"),
    ("MSGOUT-UBX_RXM_RTCM_SPI", 0x2091026c, "U1"),
    ("MSGOUT-UBX_RXM_RTCM_UART1", 0x20910269, "U1"),
    ("MSGOUT-UBX_RXM_RTCM_UART2", 0x2091026a, "U1"),
    ("MSGOUT-UBX_RXM_RTCM_USB", 0x2091026b, "U1"),
    ("MSGOUT-UBX_RXM_SFRBX_I2C", 0x20910231, "U1"),
    ("MSGOUT-UBX_RXM_SFRBX_SPI", 0x20910235, "U1"),
    ("MSGOUT-UBX_RXM_SFRBX_UART1", 0x20910232, "U1"),
    ("MSGOUT-UBX_RXM_SFRBX_UART2", 0x20910233, "U1"),
    ("MSGOUT-UBX_RXM_SFRBX_USB", 0x20910234, "U1"),
    ("MSGOUT-UBX_TIM_SVIN_I2C", 0x20910097, "U1"),
    ("MSGOUT-UBX_TIM_SVIN_SPI", 0x2091009b, "U1"),
    ("MSGOUT-UBX_TIM_SVIN_UART1", 0x20910098, "U1"),
    ("MSGOUT-UBX_TIM_SVIN_UART2", 0x20910099, "U1"),
    ("MSGOUT-UBX_TIM_SVIN_USB", 0x2091009a, "U1"),
    ("MSGOUT-UBX_TIM_TM2_I2C", 0x20910178, "U1"),
    ("MSGOUT-UBX_TIM_TM2_SPI", 0x2091017c, "U1"),
    ("MSGOUT-UBX_TIM_TM2_UART1", 0x20910179, "U1"),
    ("MSGOUT-UBX_TIM_TM2_UART2", 0x2091017a, "U1"),
    ("MSGOUT-UBX_TIM_TM2_USB", 0x2091017b, "U1"),
    ("MSGOUT-UBX_TIM_TP_I2C", 0x2091017d, "U1"),
    ("MSGOUT-UBX_TIM_TP_SPI", 0x20910181, "U1"),
    ("MSGOUT-UBX_TIM_TP_UART1", 0x2091017e, "U1"),
    ("MSGOUT-UBX_TIM_TP_UART2", 0x2091017f, "U1"),
    ("MSGOUT-UBX_TIM_TP_USB", 0x20910180, "U1"),
    ("MSGOUT-UBX_TIM_VRFY_I2C", 0x20910092, "U1"),
    ("MSGOUT-UBX_TIM_VRFY_SPI", 0x20910096, "U1"),
    ("MSGOUT-UBX_TIM_VRFY_UART1", 0x20910093, "U1"),
    ("MSGOUT-UBX_TIM_VRFY_UART2", 0x20910094, "U1"),
    ("MSGOUT-UBX_TIM_VRFY_USB", 0x20910095, "U1"),
    ("NAVHPG-DGNSSMODE", 0x20140011, "U1"),
    ("NAVSPG-FIXMODE", 0x20110011, "U1"),
    ("NAVSPG-INIFIX3D", 0x10110013, "U1"),
    ("NAVSPG-WKNROLLOVER", 0x30110017, "U2"),
    ("NAVSPG-USE_PPP", 0x10110019, "U1"),
    ("NAVSPG-UTCSTANDARD", 0x2011001c, "U1"),
    ("NAVSPG-DYNMODEL", 0x20110021, "U1"),
    ("NAVSPG-ACKAIDING", 0x10110025, "U1"),
    ("NAVSPG-USE_USRDAT", 0x10110061, "U1"),
    ("NAVSPG-USRDAT_MAJA", 0x50110062, "R8"),
    ("NAVSPG-USRDAT_FLAT", 0x50110063, "R8"),
    ("NAVSPG-USRDAT_DX", 0x40110064, "R4"),
    ("NAVSPG-USRDAT_DY", 0x40110065, "R4"),
    ("NAVSPG-USRDAT_DZ", 0x40110066, "R4"),
    ("NAVSPG-USRDAT_ROTX", 0x40110067, "R4"),
    ("NAVSPG-USRDAT_ROTY", 0x40110068, "R4"),
    ("NAVSPG-USRDAT_ROTZ", 0x40110069, "R4"),
    ("NAVSPG-USRDAT_SCALE", 0x4011006a, "R4"),
    ("NAVSPG-INFIL_MINSVS", 0x201100a1, "U1"),
    ("NAVSPG-INFIL_MAXSVS", 0x201100a2, "U1"),
    ("NAVSPG-INFIL_MINCNO", 0x201100a3, "U1"),
    ("NAVSPG-INFIL_MINELEV", 0x201100a4, "I1"),
    ("NAVSPG-INFIL_NCNOTHRS", 0x201100aa, "U1"),
    ("NAVSPG-INFIL_CNOTHRS", 0x201100ab, "U1"),
    ("NAVSPG-OUTFIL_PDOP", 0x301100b1, "U2"),
    ("NAVSPG-OUTFIL_TDOP", 0x301100b2, "U2"),
    ("NAVSPG-OUTFIL_PACC", 0x301100b3, "U2"),
    ("NAVSPG-OUTFIL_TACC", 0x301100b4, "U2"),
    ("NAVSPG-OUTFIL_FACC", 0x301100b5, "U2"),
    ("NAVSPG-CONSTR_ALT", 0x401100c1, "I4"),
    ("NAVSPG-CONSTR_ALTVAR", 0x401100c2, "U4"),
    ("NAVSPG-CONSTR_DGNSSTO", 0x201100c4, "U1"),
    ("NMEA-PROTVER", 0x20930001, "U1"),
    ("NMEA-MAXSVS", 0x20930002, "U1"),
    ("NMEA-COMPAT", 0x10930003, "U1"),
    ("NMEA-CONSIDER", 0x10930004, "U1"),
    ("NMEA-LIMIT82", 0x10930005, "U1"),
    ("NMEA-HIGHPREC", 0x10930006, "U1"),
    ("NMEA-SVNUMBERING", 0x20930007, "U1"),
    ("NMEA-FILT_GPS", 0x10930011, "U1"),
    ("NMEA-FILT_SBAS", 0x10930012, "U1"),
    ("NMEA-FILT_QZSS", 0x10930015, "U1"),
    ("NMEA-FILT_GLO", 0x10930016, "U1"),
    ("NMEA-FILT_BDS", 0x10930017, "U1"),
    ("NMEA-OUT_INVFIX", 0x10930021, "U1"),
    ("NMEA-OUT_MSKFIX", 0x10930022, "U1"),
    ("NMEA-OUT_INVTIME", 0x10930023, "U1"),
    ("NMEA-OUT_INVDATE", 0x10930024, "U1"),
    ("NMEA-OUT_ONLYGPS", 0x10930025, "U1"),
    ("NMEA-OUT_FROZENCOG", 0x10930026, "U1"),
    ("NMEA-MAINTALKERID", 0x20930031, "U1"),
    ("NMEA-GSVTALKERID", 0x20930032, "U1"),
    ("NMEA-BDSTALKERID", 0x30930033, "U2"),
    ("ODO-USE_ODO", 0x10220001, "U1"),
    ("ODO-USE_COG", 0x10220002, "U1"),
    ("ODO-OUTLPVEL", 0x10220003, "U1"),
    ("ODO-OUTLPCOG", 0x10220004, "U1"),
    ("ODO-PROFILE", 0x20220005, "U1"),
    ("ODO-COGMAXSPEED", 0x20220021, "U1"),
    ("ODO-COGMAXPOSACC", 0x20220022, "U1"),
    ("ODO-COGLPGAIN", 0x20220032, "U1"),
    ("ODO-VELLPGAIN", 0x20220031, "U1"),
    ("RATE-MEAS", 0x30210001, "U2"),
    ("RATE-NAV", 0x30210002, "U2"),
    ("RATE-TIMEREF", 0x20210003, "U1"),
    ("RINV-DUMP", 0x10c70001, "U1"),
    ("RINV-BINARY", 0x10c70002, "U1"),
    ("RINV-DATA_SIZE", 0x20c70003, "U1"),
    ("RINV-CHUNK0", 0x50c70004, "U8"),
    ("RINV-CHUNK1", 0x50c70005, "U8"),
    ("RINV-CHUNK2", 0x50c70006, "U8"),
    ("RINV-CHUNK3", 0x50c70007, "U8"),
    ("SBAS-USE_TESTMODE", 0x10360002, "U1"),
    ("SBAS-USE_RANGING", 0x10360003, "U1"),
    ("SBAS-USE_DIFFCORR", 0x10360004, "U1"),
    ("SBAS-USE_INTEGRITY", 0x10360005, "U1"),
    ("SBAS-PRNSCANMASK", 0x50360006, "U8"),
    ("SIGNAL-GPS_ENA", 0x1031001f, "U1"),
    ("SIGNAL-GPS_L1CA_ENA", 0x10310001, "U1"),
    ("SIGNAL-GPS_L2C_ENA", 0x10310003, "U1"),
    ("SIGNAL-SBAS_ENA", 0x10310020, "U1"),
    ("SIGNAL-SBAS_L1CA_ENA", 0x10310005, "U1"),
    ("SIGNAL-GAL_ENA", 0x10310021, "U1"),
    ("SIGNAL-GAL_E1_ENA", 0x10310007, "U1"),
    ("SIGNAL-GAL_E5B_ENA", 0x1031000a, "U1"),
    ("SIGNAL-BDS_ENA", 0x10310022, "U1"),
    ("SIGNAL-BDS_B1_ENA", 0x1031000d, "U1"),
    ("SIGNAL-BDS_B2_ENA", 0x1031000e, "U1"),
    ("SIGNAL-QZSS_ENA", 0x10310024, "U1"),
    ("SIGNAL-QZSS_L1CA_ENA", 0x10310012, "U1"),
    ("SIGNAL-QZSS_L1S_ENA", 0x10310014, "U1"),
    ("SIGNAL-QZSS_L2C_ENA", 0x10310015, "U1"),
    ("SIGNAL-GLO_ENA", 0x10310025, "U1"),
    ("SIGNAL-GLO_L1_ENA", 0x10310018, "U1"),
    ("SIGNAL-GLO_L2_ENA", 0x1031001a, "U1"),
    ("SPI-MAXFF", 0x20640001, "U1"),
    ("SPI-CPOLARITY", 0x10640002, "U1"),
    ("SPI-CPHASE", 0x10640003, "U1"),
    ("SPI-EXTENDEDTIMEOUT", 0x10640005, "U1"),
    ("SPI-ENABLED", 0x10640006, "U1"),
    ("SPIINPROT-UBX", 0x10790001, "U1"),
    ("SPIINPROT-NMEA", 0x10790002, "U1"),
    ("SPIINPROT-RTCM2X", 0x10790003, "U1"),
    ("SPIINPROT-RTCM3X", 0x10790004, "U1"),
    ("SPIOUTPROT-UBX", 0x107a0001, "U1"),
    ("SPIOUTPROT-NMEA", 0x107a0002, "U1"),
    ("SPIOUTPROT-RTCM3X", 0x107a0004, "U1"),
    ("TMODE-MODE", 0x20030001, "U1"),
    ("TMODE-POS_TYPE", 0x20030002, "U1"),
    ("TMODE-ECEF_X", 0x40030003, "I4"),
    ("TMODE-ECEF_Y", 0x40030004, "I4"),
    ("TMODE-ECEF_Z", 0x40030005, "I4"),
    ("TMODE-ECEF_X_HP", 0x20030006, "I1"),
    ("TMODE-ECEF_Y_HP", 0x20030007, "I1"),
    ("TMODE-ECEF_Z_HP", 0x20030008, "I1"),
    ("TMODE-LAT", 0x40030009, "I4"),
    ("TMODE-LON", 0x4003000a, "I4"),
    ("TMODE-HEIGHT", 0x4003000b, "I4"),
    ("TMODE-LAT_HP", 0x2003000c, "I1"),
    ("TMODE-LON_HP", 0x2003000d, "I1"),
    ("TMODE-HEIGHT_HP", 0x2003000e, "I1"),
    ("TMODE-FIXED_POS_ACC", 0x4003000f, "U4"),
    ("TMODE-SVIN_MIN_DUR", 0x40030010, "U4"),
    ("TMODE-SVIN_ACC_LIMIT", 0x40030011, "U4"),
    ("TP-PULSE_DEF", 0x20050023, "U1"),
    ("TP-PULSE_LENGTH_DEF", 0x20050030, "U1"),
    ("TP-ANT_CABLEDELAY", 0x30050001, "I2"),
    ("TP-PERIOD_TP1", 0x40050002, "U4"),
    ("TP-PERIOD_LOCK_TP1", 0x40050003, "U4"),
    ("TP-FREQ_TP1", 0x40050024, "U4"),
    ("TP-FREQ_LOCK_TP1", 0x40050025, "U4"),
    ("TP-LEN_TP1", 0x40050004, "U4"),
    ("TP-LEN_LOCK_TP1", 0x40050005, "U4"),
    ("TP-DUTY_TP1", 0x5005002a, "R8"),
    ("TP-DUTY_LOCK_TP1", 0x5005002b, "R8"),
    ("TP-USER_DELAY_TP1", 0x40050006, "I4"),
    ("TP-TP1_ENA", 0x10050007, "U1"),
    ("TP-SYNC_GNSS_TP1", 0x10050008, "U1"),
    ("TP-USE_LOCKED_TP1", 0x10050009, "U1"),
    ("TP-ALIGN_TO_TOW_TP1", 0x1005000a, "U1"),
    ("TP-POL_TP1", 0x1005000b, "U1"),
    ("TP-TIMEGRID_TP1", 0x2005000c, "U1"),
    ("TP-PERIOD_TP2", 0x4005000d, "U4"),
    ("TP-PERIOD_LOCK_TP2", 0x4005000e, "U4"),
    ("TP-FREQ_TP2", 0x40050026, "U4"),
    ("TP-FREQ_LOCK_TP2", 0x40050027, "U4"),
    ("TP-LEN_TP2", 0x4005000f, "U4"),
    ("TP-LEN_LOCK_TP2", 0x40050010, "U4"),
    ("TP-DUTY_TP2", 0x5005002c, "R8"),
    ("TP-DUTY_LOCK_TP2", 0x5005002d, "R8"),
    ("TP-USER_DELAY_TP2", 0x40050011, "I4"),
    ("TP-TP2_ENA", 0x10050012, "U1"),
    ("TP-SYNC_GNSS_TP2", 0x10050013, "U1"),
    ("TP-USE_LOCKED_TP2", 0x10050014, "U1"),
    ("TP-ALIGN_TO_TOW_TP2", 0x10050015, "U1"),
    ("TP-POL_TP2", 0x10050016, "U1"),
    ("TP-TIMEGRID_TP2", 0x20050017, "U1"),
    ("UART1-BAUDRATE", 0x40520001, "U4"),
    ("UART1-STOPBITS", 0x20520002, "U1"),
    ("UART1-DATABITS", 0x20520003, "U1"),
    ("UART1-PARITY", 0x20520004, "U1"),
    ("UART1-ENABLED", 0x10520005, "U1"),
    ("UART1INPROT-UBX", 0x10730001, "U1"),
    ("UART1INPROT-NMEA", 0x10730002, "U1"),
    ("UART1INPROT-RTCM2X", 0x10730003, "U1"),
    ("UART1INPROT-RTCM3X", 0x10730004, "U1"),
    ("UART1OUTPROT-UBX", 0x10740001, "U1"),
    ("UART1OUTPROT-NMEA", 0x10740002, "U1"),
    ("UART1OUTPROT-RTCM3X", 0x10740004, "U1"),
    ("UART2-BAUDRATE", 0x40530001, "U4"),
    ("UART2-STOPBITS", 0x20530002, "U1"),
    ("UART2-DATABITS", 0x20530003, "U1"),
    ("UART2-PARITY", 0x20530004, "U1"),
    ("UART2-ENABLED", 0x10530005, "U1"),
    ("UART2-REMAP", 0x10530006, "U1"),
    ("UART2INPROT-UBX", 0x10750001, "U1"),
    ("UART2INPROT-NMEA", 0x10750002, "U1"),
    ("UART2INPROT-RTCM2X", 0x10750003, "U1"),
    ("UART2INPROT-RTCM3X", 0x10750004, "U1"),
    ("UART2OUTPROT-UBX", 0x10760001, "U1"),
    ("UART2OUTPROT-NMEA", 0x10760002, "U1"),
    ("UART2OUTPROT-RTCM3X", 0x10760004, "U1"),
    ("USB-ENABLED", 0x10650001, "U1"),
    ("USB-SELFPOW", 0x10650002, "U1"),
    ("USB-VENDOR_ID", 0x3065000a, "U2"),
    ("USB-PRODUCT_ID", 0x3065000b, "U2"),
    ("USB-POWER", 0x3065000c, "U2"),
    ("USB-VENDOR_STR0", 0x5065000d, "U8"),
    ("USB-VENDOR_STR1", 0x5065000e, "U8"),
    ("USB-VENDOR_STR2", 0x5065000f, "U8"),
    ("USB-VENDOR_STR3", 0x50650010, "U8"),
    ("USB-PRODUCT_STR0", 0x50650011, "U8"),
    ("USB-PRODUCT_STR1", 0x50650012, "U8"),
    ("USB-PRODUCT_STR2", 0x50650013, "U8"),
    ("USB-PRODUCT_STR3", 0x50650014, "U8"),
    ("USB-SERIAL_NO_STR0", 0x50650015, "U8"),
    ("USB-SERIAL_NO_STR1", 0x50650016, "U8"),
    ("USB-SERIAL_NO_STR2", 0x50650017, "U8"),
    ("USB-SERIAL_NO_STR3", 0x50650018, "U8"),
    ("USBINPROT-UBX", 0x10770001, "U1"),
    ("USBINPROT-NMEA", 0x10770002, "U1"),
    ("USBINPROT-RTCM2X", 0x10770003, "U1"),
    ("USBINPROT-RTCM3X", 0x10770004, "U1"),
    ("USBOUTPROT-UBX", 0x10780001, "U1"),
    ("USBOUTPROT-NMEA", 0x10780002, "U1"),
    ("USBOUTPROT-RTCM3X", 0x10780004, "U1"),
)
